from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from relayq.services.compliance import (
    SegmentInfo,
    normalize_email,
    normalize_phone_number,
    segment_info,
)


def _email_segment_info(content: str) -> SegmentInfo:
    # Email has no billing units; report the whole body as one part.
    return SegmentInfo(length=len(content), segment_count=1, encoding="UTF-8")


@dataclass(frozen=True)
class Channel:
    # One strategy object per channel so the queue and processor stay channel-agnostic.
    name: str
    normalize: Callable[[str | None], str]
    segment: Callable[[str], SegmentInfo]
    # Inbound STOP/START keywords only apply where recipients can reply in-band.
    supports_keywords: bool


SMS = Channel(name="sms", normalize=normalize_phone_number, segment=segment_info, supports_keywords=True)
EMAIL = Channel(name="email", normalize=normalize_email, segment=_email_segment_info, supports_keywords=False)

CHANNELS: dict[str, Channel] = {SMS.name: SMS, EMAIL.name: EMAIL}


def get_channel(name: str) -> Channel:
    channel = CHANNELS.get((name or "").lower())
    if channel is None:
        raise ValueError(f"Unsupported channel: {name}")
    return channel
