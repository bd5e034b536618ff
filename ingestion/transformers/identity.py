"""
Identity normalization shared by sources and the merge pipeline
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
import re

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_NON_DIGITS = re.compile(r"\D")

MIN_PHONE_DIGITS = 10


@dataclass(frozen=True)
class Identity:
    """Normalized identity keys of one record"""
    email: Optional[str] = None
    phone: Optional[str] = None

    @property
    def key(self) -> Optional[str]:
        """Merge key: email, else phone."""
        if self.email:
            return f"email:{self.email}"
        if self.phone:
            return f"phone:{self.phone}"
        return None


def normalize_email(value: Any) -> Optional[str]:
    """Lowercase and strip; None unless it looks like an address."""
    if value is None:
        return None
    email = str(value).strip().lower()
    if not email or not _EMAIL_RE.match(email):
        return None
    return email


def normalize_phone(value: Any) -> Optional[str]:
    """Keep digits only; fewer than 10 digits is not a phone number."""
    if value is None:
        return None
    digits = _NON_DIGITS.sub("", str(value))
    if len(digits) < MIN_PHONE_DIGITS:
        return None
    return f"+{digits}"


def identity_of(email: Any, phone: Any) -> Identity:
    return Identity(email=normalize_email(email), phone=normalize_phone(phone))


def parse_amount_cents(value: Any, already_cents: bool = False) -> Optional[int]:
    """Parse a money amount into integer cents; None when unparseable or negative."""
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value).replace(",", "").replace("$", "").strip())
    except InvalidOperation:
        return None
    if amount < 0:
        return None
    if not already_cents:
        amount = amount * 100
    return int(amount.to_integral_value())


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO strings or unix epoch seconds into naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        parsed = datetime.fromtimestamp(int(value), tz=timezone.utc)
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
