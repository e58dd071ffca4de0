"""Recover the just-finished turn's text from a Stop hook payload."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

logger = logging.getLogger(__name__)


def _message_text(entry: Dict[str, Any]) -> Optional[str]:
    """Text of one assistant transcript entry, or None for other entries."""
    message = entry.get("message")
    if not isinstance(message, dict):
        return None
    if entry.get("type") != "assistant" and message.get("role") != "assistant":
        return None

    content = message.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return None

    parts = [
        block["text"]
        for block in content
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
    ]
    return "\n".join(parts) if parts else None


def last_assistant_text(lines: Iterable[str]) -> Optional[str]:
    """Return the text of the last assistant entry in JSONL ``lines``.

    Blank and malformed lines are skipped; entries carrying only tool calls
    do not count.
    """
    last: Optional[str] = None
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict):
            continue
        text = _message_text(entry)
        if text is not None:
            last = text
    return last


def read_transcript(path: Path) -> Optional[str]:
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return last_assistant_text(f)
    except OSError as e:
        logger.warning("Cannot read transcript %s: %s", path, e)
        return None


def extract_turn_output(hook_input: Dict[str, Any]) -> str:
    """Best available text for the turn that just ended.

    Preference order: ``last_assistant_message``, the last assistant entry
    of the JSONL file at ``transcript_path``, an inline ``transcript``
    string or list. Returns "" when none of them yields text.
    """
    message = hook_input.get("last_assistant_message")
    if isinstance(message, str):
        return message

    transcript_path = hook_input.get("transcript_path")
    if isinstance(transcript_path, str) and transcript_path:
        text = read_transcript(Path(transcript_path).expanduser())
        if text is not None:
            return text

    transcript = hook_input.get("transcript")
    if isinstance(transcript, str):
        return transcript
    if isinstance(transcript, list):
        return "\n".join(str(item) for item in transcript)
    return ""
