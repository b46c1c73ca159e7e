from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
import logging
import math
import re
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from email_validator import EmailNotValidError, validate_email

from relayq.core.errors import InvalidDestinationError
from relayq.domain.state import (
    SKIP_INVALID_DESTINATION,
    SKIP_QUIET_HOURS,
    SKIP_RECIPIENT_OPTED_OUT,
    SKIP_TENANT_DISABLED,
)


logger = logging.getLogger(__name__)

OPT_OUT_KEYWORDS = frozenset({"STOP", "UNSUBSCRIBE", "CANCEL", "END", "QUIT", "STOPALL"})
OPT_IN_KEYWORDS = frozenset({"START", "YES", "UNSTOP", "SUBSCRIBE", "RESUME"})

# GSM 03.38 basic character set.
_GSM7_BASIC = frozenset(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)
# Extension table characters are sent as escape + char and occupy two septets.
_GSM7_EXTENDED = frozenset("^{}\\[~]|€\f")

GSM7_SINGLE_LIMIT = 160
GSM7_MULTI_LIMIT = 153
UCS2_SINGLE_LIMIT = 70
UCS2_MULTI_LIMIT = 67

_PHONE_STRIP = re.compile(r"[^\d+]")
_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


@dataclass(frozen=True)
class SegmentInfo:
    length: int
    segment_count: int
    encoding: str


@dataclass(frozen=True)
class QuietHours:
    enabled: bool
    start: str = "21:00"
    end: str = "09:00"
    timezone: str = "UTC"

    @classmethod
    def from_settings(cls, settings: Any) -> "QuietHours":
        # Accept tenant settings rows or any object exposing the quiet_hours_* attributes.
        return cls(
            enabled=bool(getattr(settings, "quiet_hours_enabled", False)),
            start=str(getattr(settings, "quiet_hours_start", None) or "21:00"),
            end=str(getattr(settings, "quiet_hours_end", None) or "09:00"),
            timezone=str(getattr(settings, "quiet_hours_timezone", None) or "UTC"),
        )


@dataclass(frozen=True)
class SendPermission:
    can_send: bool
    reason: str | None = None
    retry_after: datetime | None = None


def is_opt_out_keyword(text: str | None) -> bool:
    return (text or "").strip().upper() in OPT_OUT_KEYWORDS


def is_opt_in_keyword(text: str | None) -> bool:
    return (text or "").strip().upper() in OPT_IN_KEYWORDS


def _parse_hhmm(value: str) -> time:
    match = _HHMM.match(value.strip())
    if match is None:
        raise ValueError(f"invalid HH:MM value: {value!r}")
    return time(int(match.group(1)), int(match.group(2)))


def _resolve_zone(name: str) -> ZoneInfo | None:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def _as_utc(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def is_quiet_hours(settings: QuietHours | Any, now: datetime | None = None) -> bool:
    """Return whether ``now`` falls inside the tenant's quiet-hours window.

    The window is ``[start, end)`` in the tenant's local time. When ``start`` is
    later than ``end`` the window wraps midnight (21:00-09:00 is quiet from 21:00
    until 09:00 the next morning).

    An unknown timezone or malformed start/end fails open: the function returns
    False and logs a warning, so misconfiguration never silently blocks every
    send for a tenant. Callers needing a fail-closed policy must validate the
    configuration before enabling quiet hours.
    """
    quiet = settings if isinstance(settings, QuietHours) else QuietHours.from_settings(settings)
    if not quiet.enabled:
        return False
    zone = _resolve_zone(quiet.timezone)
    try:
        start = _parse_hhmm(quiet.start)
        end = _parse_hhmm(quiet.end)
    except ValueError:
        zone = None
    if zone is None:
        logger.warning(
            "quiet_hours_config_invalid timezone=%s start=%s end=%s fail_mode=open",
            quiet.timezone,
            quiet.start,
            quiet.end,
        )
        return False
    if start == end:
        return False
    local = _as_utc(now).astimezone(zone).time().replace(second=0, microsecond=0)
    if start < end:
        return start <= local < end
    return local >= start or local < end


def next_allowed_send_time(settings: QuietHours | Any, now: datetime | None = None) -> datetime:
    # Next occurrence of the quiet-hours end after ``now``, returned in UTC.
    quiet = settings if isinstance(settings, QuietHours) else QuietHours.from_settings(settings)
    current = _as_utc(now)
    zone = _resolve_zone(quiet.timezone)
    try:
        end = _parse_hhmm(quiet.end)
    except ValueError:
        zone = None
    if zone is None:
        return current
    local_now = current.astimezone(zone)
    candidate = datetime.combine(local_now.date(), end, tzinfo=zone)
    if candidate <= local_now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), end, tzinfo=zone)
    return candidate.astimezone(timezone.utc)


def normalize_phone_number(raw: str | None) -> str:
    """Canonicalize a phone number to E.164 or raise InvalidDestinationError.

    Formatting characters are stripped. Bare 10-digit numbers are treated as
    North American and prefixed with ``+1``; 11 digits starting with ``1`` get a
    ``+``. Anything else must already carry a leading ``+`` and 8-15 digits.
    """
    value = (raw or "").strip()
    if not value:
        raise InvalidDestinationError("phone number is empty")
    stripped = _PHONE_STRIP.sub("", value)
    if "+" in stripped[1:]:
        raise InvalidDestinationError("phone number has a misplaced '+'")
    if not stripped.startswith("+"):
        if len(stripped) == 10:
            stripped = f"+1{stripped}"
        elif len(stripped) == 11 and stripped.startswith("1"):
            stripped = f"+{stripped}"
        else:
            raise InvalidDestinationError("phone number must include a country code")
    digits = stripped[1:]
    if not digits.isdigit() or not 8 <= len(digits) <= 15 or digits.startswith("0"):
        raise InvalidDestinationError("phone number is not a valid E.164 number")
    return stripped


def normalize_email(raw: str | None) -> str:
    value = (raw or "").strip()
    if not value:
        raise InvalidDestinationError("email address is empty")
    try:
        result = validate_email(value, check_deliverability=False)
    except EmailNotValidError as exc:
        raise InvalidDestinationError(str(exc)) from exc
    return result.normalized.lower()


def normalize_destination(raw: str | None, channel: str = "sms") -> str:
    if channel == "email":
        return normalize_email(raw)
    if channel == "sms":
        return normalize_phone_number(raw)
    raise InvalidDestinationError(f"unsupported channel: {channel}")


def is_valid_destination(raw: str | None, channel: str = "sms") -> bool:
    try:
        normalize_destination(raw, channel)
    except InvalidDestinationError:
        return False
    return True


def is_gsm7(content: str) -> bool:
    return all(ch in _GSM7_BASIC or ch in _GSM7_EXTENDED for ch in content)


def segment_info(content: str) -> SegmentInfo:
    """Compute billed length and segment count for an SMS body.

    Length is counted in characters. The GSM-7 alphabet only picks the tier:
    GSM-7 bodies fit 160 characters in one segment and split into 153-character
    parts; anything else is UCS-2 with 70 per segment and 67-character parts.
    """
    length = len(content)
    if is_gsm7(content):
        if length <= GSM7_SINGLE_LIMIT:
            return SegmentInfo(length=length, segment_count=1, encoding="GSM-7")
        return SegmentInfo(length=length, segment_count=math.ceil(length / GSM7_MULTI_LIMIT), encoding="GSM-7")
    if length <= UCS2_SINGLE_LIMIT:
        return SegmentInfo(length=length, segment_count=1, encoding="UCS-2")
    return SegmentInfo(length=length, segment_count=math.ceil(length / UCS2_MULTI_LIMIT), encoding="UCS-2")


def evaluate_send_permission(
    settings: Any,
    destination: str | None,
    is_opted_out: bool,
    *,
    channel: str = "sms",
    now: datetime | None = None,
) -> SendPermission:
    # Fixed priority: disabled tenant, invalid destination, opted out, quiet hours.
    if settings is None or not bool(getattr(settings, "enabled", False)):
        return SendPermission(can_send=False, reason=SKIP_TENANT_DISABLED)
    if not is_valid_destination(destination, channel):
        return SendPermission(can_send=False, reason=SKIP_INVALID_DESTINATION)
    if is_opted_out:
        return SendPermission(can_send=False, reason=SKIP_RECIPIENT_OPTED_OUT)
    quiet = QuietHours.from_settings(settings)
    if is_quiet_hours(quiet, now):
        return SendPermission(
            can_send=False,
            reason=SKIP_QUIET_HOURS,
            retry_after=next_allowed_send_time(quiet, now),
        )
    return SendPermission(can_send=True)
