from __future__ import annotations

from datetime import datetime, timezone

import pytest

from relayq.core.errors import InvalidDestinationError
from relayq.domain.state import (
    SKIP_INVALID_DESTINATION,
    SKIP_QUIET_HOURS,
    SKIP_RECIPIENT_OPTED_OUT,
    SKIP_TENANT_DISABLED,
)
from relayq.services.compliance import (
    QuietHours,
    evaluate_send_permission,
    is_opt_in_keyword,
    is_opt_out_keyword,
    is_quiet_hours,
    next_allowed_send_time,
    normalize_email,
    normalize_phone_number,
    segment_info,
)


class _Settings:
    # Minimal stand-in for a tenant settings row.
    def __init__(self, **overrides) -> None:
        self.enabled = True
        self.quiet_hours_enabled = False
        self.quiet_hours_start = "21:00"
        self.quiet_hours_end = "09:00"
        self.quiet_hours_timezone = "UTC"
        for key, value in overrides.items():
            setattr(self, key, value)


def _utc(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 10, hour, minute, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("now", "expected"),
    [
        (_utc(23, 0), True),
        (_utc(3, 0), True),
        (_utc(10, 0), False),
        (_utc(20, 59), False),
        (_utc(21, 0), True),
        (_utc(9, 0), False),
    ],
)
def test_quiet_hours_window_wraps_midnight(now: datetime, expected: bool) -> None:
    quiet = QuietHours(enabled=True, start="21:00", end="09:00", timezone="UTC")
    assert is_quiet_hours(quiet, now) is expected


def test_quiet_hours_disabled_never_blocks() -> None:
    assert is_quiet_hours(QuietHours(enabled=False), _utc(23, 0)) is False


def test_quiet_hours_uses_tenant_timezone() -> None:
    # 02:00 UTC is 22:00 the previous evening in New York (EDT) on this date.
    quiet = QuietHours(enabled=True, start="21:00", end="09:00", timezone="America/New_York")
    assert is_quiet_hours(quiet, _utc(2, 0)) is True
    assert is_quiet_hours(quiet, _utc(20, 0)) is False


def test_quiet_hours_non_wrapping_window() -> None:
    quiet = QuietHours(enabled=True, start="12:00", end="13:00", timezone="UTC")
    assert is_quiet_hours(quiet, _utc(12, 30)) is True
    assert is_quiet_hours(quiet, _utc(13, 0)) is False


def test_invalid_timezone_fails_open() -> None:
    quiet = QuietHours(enabled=True, start="00:00", end="23:59", timezone="Mars/Olympus")
    assert is_quiet_hours(quiet, _utc(12, 0)) is False


def test_next_allowed_send_time_after_midnight_is_same_day_end() -> None:
    quiet = QuietHours(enabled=True, start="21:00", end="09:00", timezone="UTC")
    assert next_allowed_send_time(quiet, _utc(3, 0)) == _utc(9, 0)


def test_next_allowed_send_time_before_midnight_is_next_day_end() -> None:
    quiet = QuietHours(enabled=True, start="21:00", end="09:00", timezone="UTC")
    expected = datetime(2026, 3, 11, 9, 0, tzinfo=timezone.utc)
    assert next_allowed_send_time(quiet, _utc(23, 0)) == expected


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("(555) 123-4567", "+15551234567"),
        ("15551234567", "+15551234567"),
        ("+44 20 7946 0958", "+442079460958"),
        ("  +1 555.123.4567 ", "+15551234567"),
    ],
)
def test_normalize_phone_number(raw: str, expected: str) -> None:
    assert normalize_phone_number(raw) == expected


@pytest.mark.parametrize("raw", ["", "12345", "+0123456789", "555-CALL-NOW", "+1+5551234567"])
def test_normalize_phone_number_rejects_invalid(raw: str) -> None:
    with pytest.raises(InvalidDestinationError):
        normalize_phone_number(raw)


def test_normalize_email_lowercases() -> None:
    assert normalize_email("  Jane.Doe@Example.COM ") == "jane.doe@example.com"
    with pytest.raises(InvalidDestinationError):
        normalize_email("not-an-email")


@pytest.mark.parametrize(
    ("content", "length", "segments", "encoding"),
    [
        ("a" * 160, 160, 1, "GSM-7"),
        ("a" * 161, 161, 2, "GSM-7"),
        ("a" * 306, 306, 2, "GSM-7"),
        ("a" * 307, 307, 3, "GSM-7"),
        ("é" * 10 + "€", 11, 1, "GSM-7"),
        ("a" * 159 + "[", 160, 1, "GSM-7"),
        ("😀" * 35, 35, 1, "UCS-2"),
        ("a" * 69 + "😀", 70, 1, "UCS-2"),
        ("a" * 70 + "😀", 71, 2, "UCS-2"),
        ("ж" * 70, 70, 1, "UCS-2"),
        ("ж" * 71, 71, 2, "UCS-2"),
    ],
)
def test_segment_info(content: str, length: int, segments: int, encoding: str) -> None:
    info = segment_info(content)
    assert (info.length, info.segment_count, info.encoding) == (length, segments, encoding)


def test_keywords_are_case_and_whitespace_insensitive() -> None:
    assert is_opt_out_keyword(" stop ")
    assert is_opt_out_keyword("Unsubscribe")
    assert not is_opt_out_keyword("please stop")
    assert is_opt_in_keyword("start")
    assert not is_opt_in_keyword(None)


def test_send_permission_priority_order() -> None:
    quiet = _Settings(quiet_hours_enabled=True)
    night = _utc(23, 0)

    assert evaluate_send_permission(None, "+15551234567", False).reason == SKIP_TENANT_DISABLED
    assert (
        evaluate_send_permission(_Settings(enabled=False), "bogus", True, now=night).reason == SKIP_TENANT_DISABLED
    )
    assert evaluate_send_permission(quiet, "bogus", True, now=night).reason == SKIP_INVALID_DESTINATION
    assert evaluate_send_permission(quiet, "+15551234567", True, now=night).reason == SKIP_RECIPIENT_OPTED_OUT

    deferred = evaluate_send_permission(quiet, "+15551234567", False, now=night)
    assert deferred.can_send is False
    assert deferred.reason == SKIP_QUIET_HOURS
    assert deferred.retry_after == datetime(2026, 3, 11, 9, 0, tzinfo=timezone.utc)

    allowed = evaluate_send_permission(quiet, "+15551234567", False, now=_utc(12, 0))
    assert allowed.can_send is True
    assert allowed.reason is None
