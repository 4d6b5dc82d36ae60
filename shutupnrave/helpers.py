import time
import re
import secrets
import string
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
import hmac
from typing import Optional

_BASE36 = string.digits + string.ascii_uppercase
_ORDER_ID_RE = re.compile(r"^ORD-\d{4}-[A-Z0-9]{6}$")


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def is_valid_phone(phone: Optional[str]) -> bool:
    # local 11-digit numbers, e.g. 08012345678
    if not phone:
        return False
    return re.match(r"^\d{11}$", phone.strip()) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def round_half_up(value) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def random_code(length: int) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def generate_order_id(year: Optional[int] = None) -> str:
    """ORD-<year>-<6 uppercase base36 chars>, e.g. ORD-2025-7QX2KD."""
    if year is None:
        year = datetime.now(timezone.utc).year
    return f"ORD-{year:04d}-{random_code(6)}"


def is_order_id(value: str) -> bool:
    return _ORDER_ID_RE.match(value or "") is not None


def generate_ref_code(full_name: Optional[str]) -> str:
    base = re.sub(r"[^a-zA-Z]", "", full_name or "")[:6].upper()
    return f"{base or 'AFF'}{random_code(6)}"


def format_naira(amount_minor: int) -> str:
    # amounts are stored in kobo
    return f"₦{amount_minor / 100:,.2f}"
