from __future__ import annotations

import re
from typing import List

from contextlens.schemas.session import TranscriptFragment
from contextlens.services.session_registry import RECENT_LINES_MAX, SessionState

_SPEAKER_PREFIX_RE = re.compile(r"^\[[^\]]*\]\s*")


def format_fragment_line(fragment: TranscriptFragment) -> str:
    text_value = (fragment.text or "").replace("\n", " ").strip()
    if fragment.speaker:
        return f"[{fragment.speaker}] {text_value}"
    return text_value


def _has_content(line: str) -> bool:
    if not line:
        return False
    return bool(_SPEAKER_PREFIX_RE.sub("", line, count=1).strip())


def push_tail(tail: List[str], line: str, max_lines: int = RECENT_LINES_MAX) -> List[str]:
    lines = [item for item in [*tail, line] if _has_content(item)]
    return lines[-max_lines:]


def append_fragment(session: SessionState, fragment: TranscriptFragment, received_at_ms: int) -> str:
    """Pure state mutation: buffer, display tail, chunk log. Returns the rendered line."""
    fragment.received_at_ms = received_at_ms
    line = format_fragment_line(fragment)
    session.chunks.append(fragment)
    session.buffer += f"{line}\n"
    session.recent_lines = push_tail(session.recent_lines, line)
    session.display.updated_at_ms = received_at_ms
    return line


def trailing_window(buffer: str, max_chars: int) -> str:
    if max_chars <= 0:
        return ""
    return buffer[-max_chars:]
