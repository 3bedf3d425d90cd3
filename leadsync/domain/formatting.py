from __future__ import annotations

import re
from datetime import datetime, timezone
from zoneinfo import ZoneInfo


DEFAULT_TIMEZONE = "America/Sao_Paulo"
PHONE_MATCH_TAIL = 9
PHONE_MATCH_MIN_DIGITS = 8

_NON_DIGITS = re.compile(r"\D+")


def digits_only(value: object) -> str:
    if value is None:
        return ""
    return _NON_DIGITS.sub("", str(value))


def phone_tail(value: object) -> str | None:
    """Return the comparable tail of a phone, or None when it is too short to match."""
    digits = digits_only(value)
    tail = digits[-PHONE_MATCH_TAIL:]
    if len(tail) < PHONE_MATCH_MIN_DIGITS:
        return None
    return tail


def phones_match(left: object, right: object) -> bool:
    left_tail = phone_tail(left)
    return left_tail is not None and left_tail == phone_tail(right)


def format_phone_br(value: object) -> str:
    digits = digits_only(value)
    if digits.startswith("55") and len(digits) > 11:
        digits = digits[2:]
    if len(digits) == 11:
        return f"({digits[:2]}){digits[2:7]}-{digits[7:]}"
    if len(digits) == 10:
        return f"({digits[:2]}){digits[2:6]}-{digits[6:]}"
    if len(digits) >= 8:
        return f"({digits[:2]}){digits[2:]}"
    return digits


def to_local(moment: datetime, tz_name: str = DEFAULT_TIMEZONE) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(ZoneInfo(tz_name))


def format_date_br(moment: datetime, tz_name: str = DEFAULT_TIMEZONE) -> str:
    return to_local(moment, tz_name).strftime("%d/%m/%Y")


def parse_timestamp(value: object) -> datetime | None:
    """Parse ISO-8601 strings and epoch seconds into aware datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        try:
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_amount(value: object) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().replace("R$", "").replace(" ", "")
    if "," in text:
        text = text.replace(".", "").replace(",", ".")
    try:
        return float(text)
    except ValueError:
        return None


def format_brl(amount: float) -> str:
    return "R$ " + f"{amount:.2f}".replace(".", ",")
