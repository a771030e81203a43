from __future__ import annotations
from typing import Optional, Dict, Any, List, Tuple
import time

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession, \
    async_sessionmaker

from ...infra.sql import Gated


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_PENDING_BOOKINGS = r"""
CREATE TABLE IF NOT EXISTS pending_bookings (
  transaction_id TEXT PRIMARY KEY,
  user_id        TEXT,
  booking_data   TEXT,
  amount         INTEGER NOT NULL DEFAULT 0,
  status         TEXT NOT NULL,
  created_at     DOUBLE PRECISION NOT NULL,
  expires_at     DOUBLE PRECISION NOT NULL,
  purge_at       DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_PROMOTION_GATES = r"""
-- one row per transaction that has been (or is being) promoted
CREATE TABLE IF NOT EXISTS promotion_gates (
  transaction_id TEXT PRIMARY KEY,
  booking_id     TEXT NOT NULL DEFAULT '',
  created_at     DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_IDX_PB_CREATED_AT = r"""
CREATE INDEX IF NOT EXISTS idx_pb_created_at
  ON pending_bookings (created_at DESC);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_PENDING_BOOKINGS))
    await exec_(text(SQL_CREATE_PROMOTION_GATES))
    await exec_(text(SQL_CREATE_IDX_PB_CREATED_AT))


class PendingBookingStore:
    def __init__(
        self, *, sessions: async_sessionmaker[AsyncSession],
        grace_seconds: int, gated: Gated,
    ) -> None:
        self.sessions = sessions
        self.grace = grace_seconds
        self.gated = gated

    async def save_pending(
            self, txid: str, mapping: Dict[str, Any], ttl_seconds: int
    ) -> None:
        created = float(mapping.get("created_at") or time.time())
        async with self.gated():
            async with self.sessions() as db, db.begin():
                await db.execute(text("""
                  INSERT INTO pending_bookings(
                    transaction_id, user_id, booking_data, amount, status,
                    created_at, expires_at, purge_at
                  ) VALUES (
                    :txid, :user_id, :booking_data, :amount, :status,
                    :created_at, :expires_at, :purge_at
                  )
                  ON CONFLICT (transaction_id) DO UPDATE SET
                    user_id=EXCLUDED.user_id,
                    booking_data=EXCLUDED.booking_data,
                    amount=EXCLUDED.amount,
                    status=EXCLUDED.status,
                    created_at=EXCLUDED.created_at,
                    expires_at=EXCLUDED.expires_at,
                    purge_at=EXCLUDED.purge_at
                """), {
                    "txid": txid,
                    "user_id": str(mapping.get("user_id") or ""),
                    "booking_data": mapping.get("booking_data"),
                    "amount": int(mapping.get("amount") or 0),
                    "status": mapping["status"],
                    "created_at": created,
                    "expires_at": float(mapping["expires_at"]),
                    "purge_at": created + int(ttl_seconds) + self.grace,
                })

    async def get_pending(self, txid: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.sessions() as db, db.begin():
                row = (await db.execute(text("""
                  SELECT transaction_id, user_id, booking_data, amount,
                         status, created_at, expires_at, purge_at
                  FROM pending_bookings WHERE transaction_id=:txid
                """), {"txid": txid})).mappings().first()
        if not row or float(row["purge_at"]) <= time.time():
            return None
        out = dict(row)
        out.pop("purge_at")
        return out

    async def remove_pending(self, txid: str) -> None:
        async with self.gated():
            async with self.sessions() as db, db.begin():
                await db.execute(
                    text("DELETE FROM pending_bookings "
                         "WHERE transaction_id=:txid"),
                    {"txid": txid}
                )

    async def set_status(self, txid: str, status: str) -> bool:
        async with self.gated():
            async with self.sessions() as db, db.begin():
                res = await db.execute(
                    text("UPDATE pending_bookings SET status=:status "
                         "WHERE transaction_id=:txid"),
                    {"txid": txid, "status": status}
                )
        return res.rowcount > 0

    # ---- promotion gate
    async def get_promotion(self, txid: str) -> Optional[str]:
        async with self.gated():
            async with self.sessions() as db, db.begin():
                row = (await db.execute(text("""
                  SELECT booking_id FROM promotion_gates
                  WHERE transaction_id=:txid
                """), {"txid": txid})).first()
        return None if row is None else (row[0] or "")

    async def claim_promotion(self, txid: str) -> bool:
        async with self.gated():
            async with self.sessions() as db, db.begin():
                row = (await db.execute(text("""
                  INSERT INTO promotion_gates(transaction_id, created_at)
                  VALUES(:txid, :now)
                  ON CONFLICT (transaction_id) DO NOTHING
                  RETURNING transaction_id
                """), {"txid": txid, "now": time.time()})).first()
        return row is not None

    async def finish_promotion(self, txid: str, booking_id: str) -> None:
        async with self.gated():
            async with self.sessions() as db, db.begin():
                await db.execute(text("""
                  UPDATE promotion_gates SET booking_id=:bid
                  WHERE transaction_id=:txid
                """), {"txid": txid, "bid": str(booking_id)})

    async def release_promotion(self, txid: str) -> None:
        async with self.gated():
            async with self.sessions() as db, db.begin():
                await db.execute(
                    text("DELETE FROM promotion_gates "
                         "WHERE transaction_id=:txid"),
                    {"txid": txid}
                )

    # ---- admin view
    async def get_recent_pending(
        self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        now = time.time()
        async with self.gated():
            async with self.sessions() as db, db.begin():
                # housekeeping: drop rows past their grace period
                await db.execute(
                    text("DELETE FROM pending_bookings WHERE purge_at <= :now"),
                    {"now": now},
                )
                total = (await db.execute(
                    text("SELECT COUNT(*) FROM pending_bookings")
                )).scalar_one()
                rows = (await db.execute(text("""
                    SELECT transaction_id, user_id, amount, status,
                           created_at, expires_at
                    FROM pending_bookings
                    ORDER BY created_at DESC
                    LIMIT :lim
                """), {"lim": int(limit)})).mappings().all()

        items: List[Dict[str, Any]] = []
        for r in rows:
            created = float(r["created_at"])
            expires = float(r["expires_at"])
            items.append({
                "transaction_id": r["transaction_id"],
                "user_id": r["user_id"] or "",
                "amount": int(r["amount"] or 0),
                "status": r["status"],
                "created_at": created,
                "expires_at": expires,
                "age_ms": int(max(0.0, now - created) * 1000),
                "expired": now > expires,
            })
        return int(total), items
