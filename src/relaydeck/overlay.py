"""Carry locally measured latency across dashboard refreshes."""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from .models import Channel

LATENCY_TTL = timedelta(minutes=5)


def overlay_is_fresh(
    channel: Channel, *, now: datetime, ttl: timedelta = LATENCY_TTL
) -> bool:
    """Return ``True`` while the channel's local latency measurement is still valid."""

    measured_at = channel.latency_measured_at
    if measured_at is None:
        return False
    return now - measured_at < ttl


def merge_channels(
    fresh: Sequence[Channel],
    previous: Optional[Sequence[Channel]],
    *,
    now: Optional[datetime] = None,
    ttl: timedelta = LATENCY_TTL,
) -> list[Channel]:
    """Return ``fresh`` with still-valid latency measurements copied from ``previous``.

    Records are matched by ``index``. Records only present in ``previous``
    are dropped, records only present in ``fresh`` are returned untouched.
    Neither input is modified; overlaid records are copies.
    """

    if not previous:
        return list(fresh)
    moment = now or datetime.now(tz=timezone.utc)
    by_index: dict[int, Channel] = {}
    for channel in previous:
        by_index.setdefault(channel.index, channel)

    merged: list[Channel] = []
    for channel in fresh:
        existing = by_index.get(channel.index)
        if existing is not None and overlay_is_fresh(existing, now=moment, ttl=ttl):
            channel = replace(
                channel,
                latency=existing.latency,
                latency_measured_at=existing.latency_measured_at,
            )
        merged.append(channel)
    return merged


__all__ = ["LATENCY_TTL", "merge_channels", "overlay_is_fresh"]
