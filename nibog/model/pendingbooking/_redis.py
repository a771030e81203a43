from __future__ import annotations
from typing import Optional, Dict, Any, Tuple, List
import time
import redis.asyncio as redis
from redis.exceptions import WatchError


# ---- keys
def k_pb(txid: str) -> str: return f"pb:{txid}"
def k_promoted(txid: str) -> str: return f"promoted:{txid}"


PENDING_INDEX = "pendings"
PROMOTION_TTL_SECONDS = 7 * 24 * 3600


class PendingBookingStore:
    def __init__(self, r: redis.Redis, grace_seconds: int) -> None:
        self.r = r
        # how long an expired record lingers so reads can answer 410
        self.grace = grace_seconds
        self.PENDING_INDEX = PENDING_INDEX

    async def save_pending(
            self, txid: str, mapping: Dict[str, Any],
            ttl_seconds: int) -> None:
        # decode_responses=True: store everything as strings
        values = {k: "" if v is None else str(v) for k, v in mapping.items()}
        pipe = self.r.pipeline(transaction=True)
        pipe.delete(k_pb(txid))
        pipe.hset(k_pb(txid), mapping=values)
        pipe.expire(k_pb(txid), int(ttl_seconds) + self.grace)
        pipe.zadd(
            PENDING_INDEX,
            {txid: float(mapping.get("created_at") or time.time())}
        )
        await pipe.execute()

    async def get_pending(self, txid: str) -> Optional[Dict[str, str]]:
        h = await self.r.hgetall(k_pb(txid))
        return h or None

    async def remove_pending(self, txid: str) -> None:
        pipe = self.r.pipeline(transaction=True)
        pipe.zrem(PENDING_INDEX, txid)
        pipe.delete(k_pb(txid))
        await pipe.execute()

    async def set_status(self, txid: str, status: str) -> bool:
        # never resurrect a deleted record as a bare status hash
        key = k_pb(txid)
        async with self.r.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                if not await pipe.exists(key):
                    return False
                pipe.multi()
                pipe.hset(key, "status", status)
                await pipe.execute()
                return True
            except WatchError:
                return False

    # ---- promotion gate
    async def get_promotion(self, txid: str) -> Optional[str]:
        # "" while a promotion is in flight, booking id once done
        return await self.r.get(k_promoted(txid))

    async def claim_promotion(self, txid: str) -> bool:
        ok = await self.r.set(
            k_promoted(txid), "", nx=True, ex=PROMOTION_TTL_SECONDS
        )
        return bool(ok)

    async def finish_promotion(self, txid: str, booking_id: str) -> None:
        await self.r.set(
            k_promoted(txid), str(booking_id), ex=PROMOTION_TTL_SECONDS
        )

    async def release_promotion(self, txid: str) -> None:
        await self.r.delete(k_promoted(txid))

    # ---- admin view
    async def _list_recent_txids(
            self, limit: int = 200
    ) -> Tuple[int, List[str]]:
        total = await self.r.zcard(PENDING_INDEX)
        txids = await self.r.zrevrange(PENDING_INDEX, 0, max(0, limit - 1))
        return total, txids

    async def get_recent_pending(
            self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        total, txids = await self._list_recent_txids(limit=limit)
        pipe = self.r.pipeline()
        for txid in txids:
            pipe.hgetall(k_pb(txid))
        rows = await pipe.execute()

        now = time.time()
        items = []
        for txid, h in zip(txids, rows):
            # house-keeping: index entry whose hash already expired
            if not h:
                await self.remove_pending(txid)
                total -= 1
                continue
            try:
                created = float(h.get("created_at", "0"))
                expires = float(h.get("expires_at", "0"))
            except ValueError:
                created, expires = 0.0, 0.0
            items.append({
                "transaction_id": txid,
                "user_id": h.get("user_id", ""),
                "amount": int(h.get("amount") or 0),
                "status": h.get("status", ""),
                "created_at": created,
                "expires_at": expires,
                "age_ms": int(max(0.0, now - created) * 1000),
                "expired": now > expires,
            })
        return total, items
