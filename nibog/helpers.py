import time
import re
from datetime import datetime, timezone
import hmac
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def now_ms() -> int:
    return int(time.time() * 1000)


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def digits_only(value: Optional[str]) -> str:
    return re.sub(r"\D", "", str(value or ""))


def to_paise(rupees) -> int:
    # str() first so 799.5 stays 799.5 and not 799.4999...
    return int(
        (Decimal(str(rupees)) * 100).quantize(Decimal("1"),
                                               rounding=ROUND_HALF_UP)
    )
