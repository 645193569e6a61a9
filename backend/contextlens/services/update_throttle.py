from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ThrottlePolicy:
    min_interval_ms: int
    min_chars_delta: int


def summary_due(
    now_ms: int,
    last_summary_at_ms: int,
    last_summary_chars: int,
    buffer_len: int,
    policy: ThrottlePolicy,
) -> bool:
    """
    Overlay refresh gate.

    Skip only while both the minimum interval and the minimum character growth
    are unmet; either one being satisfied is enough to fire.
    """
    time_delta = now_ms - last_summary_at_ms
    char_delta = buffer_len - last_summary_chars
    if time_delta < policy.min_interval_ms and char_delta < policy.min_chars_delta:
        return False
    return True


def vision_due(now_ms: int, last_vision_at_ms: int, interval_ms: int, backoff_until_ms: int = 0) -> bool:
    if now_ms < backoff_until_ms:
        return False
    return (now_ms - last_vision_at_ms) >= interval_ms
