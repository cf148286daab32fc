from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Iterator, List, Optional

log = logging.getLogger(__name__)


def _file_size(path: str) -> Optional[int]:
    try:
        return os.path.getsize(path)
    except OSError:
        return None


def read_range(path: str, start: int, end: int) -> bytes:
    with open(path, "rb") as fh:
        fh.seek(start)
        return fh.read(max(0, end - start))


def iter_json_lines(data: bytes) -> Iterator[Dict[str, Any]]:
    """One parse attempt per non-empty line; bad lines are skipped."""
    for line in data.decode("utf-8", errors="replace").split("\n"):
        line = line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except ValueError:
            log.debug("skipping malformed line: %.80s", line)
            continue
        if isinstance(payload, dict):
            yield payload


class JsonlTailer:
    """
    Tails an append-only NDJSON file by byte offset.
    Bytes are consumed at most once: the offset moves past a new range before
    any of its lines are parsed.
    """

    def __init__(self, path: str, from_start: bool = False) -> None:
        self.path = path
        self.offset = 0 if from_start else (_file_size(path) or 0)

    def read_new(self) -> Iterator[Dict[str, Any]]:
        """Yield events appended since the last call (growth notification)."""
        size = _file_size(self.path)
        if size is None:
            return
        if size <= self.offset:
            self.offset = size
            return
        start, self.offset = self.offset, size
        try:
            data = read_range(self.path, start, size)
        except OSError as exc:
            log.debug("could not read %s: %s", self.path, exc)
            return
        yield from iter_json_lines(data)


def _tool_use_events(entry: Dict[str, Any], fallback_session: str) -> List[Dict[str, Any]]:
    if entry.get("type") != "assistant":
        return []
    message = entry.get("message")
    if not isinstance(message, dict) or not message.get("content"):
        return []
    content = message["content"]
    blocks = content if isinstance(content, list) else [content]
    events: List[Dict[str, Any]] = []
    for block in blocks:
        if not isinstance(block, dict) or block.get("type") != "tool_use":
            continue
        tool_input = block.get("input")
        events.append(
            {
                "session_id": entry.get("session_id") or entry.get("sessionId") or fallback_session,
                "hook_event_name": "PostToolUse",
                "tool_name": block.get("name"),
                "tool_input": tool_input if isinstance(tool_input, dict) else {},
                "cwd": entry.get("cwd"),
            }
        )
    return events


class TranscriptTailer:
    """Turns tool_use blocks appended to session transcripts into events.

    The first notification for a transcript only records its size, so
    history written before the observer noticed the file is not replayed.
    """

    def __init__(self, root: str) -> None:
        self.root = root
        self._sizes: Dict[str, int] = {}

    def handle_change(self, rel_path: str) -> List[Dict[str, Any]]:
        if not rel_path.endswith(".jsonl"):
            return []
        path = os.path.join(self.root, rel_path)
        size = _file_size(path)
        if size is None:
            self._sizes.pop(path, None)
            return []
        prev = self._sizes.get(path, size)
        self._sizes[path] = size
        if size <= prev:
            return []
        try:
            data = read_range(path, prev, size)
        except OSError as exc:
            log.debug("could not read transcript %s: %s", path, exc)
            return []
        stem = os.path.splitext(os.path.basename(path))[0]
        events: List[Dict[str, Any]] = []
        for entry in iter_json_lines(data):
            events.extend(_tool_use_events(entry, stem))
        return events
