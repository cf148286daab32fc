#!/usr/bin/env python3
"""Reconciliation of raw hook events into agents, events and messages."""
from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from heuristics import infer_role_from_files, model_label, normalize_path, short_file, summarize_task
from models import (
    SUBAGENT_PLACEHOLDER,
    Agent,
    Clock,
    IdFactory,
    PendingTask,
    SwarmState,
    new_id,
    to_ms,
)

log = logging.getLogger(__name__)

STATUS_HOLD_S = 3.0
TASK_MATCH_WINDOW_S = 15.0
MAX_PENDING_TASKS = 50

PRE_TOOL = "pre_tool"
POST_TOOL = "post_tool"
STOP = "stop"
SESSION_START = "session_start"
SUBAGENT_STOP = "subagent_stop"
TASK_DONE = "task_done"

KIND_ALIASES = {
    "pre_tool": PRE_TOOL,
    "PreToolUse": PRE_TOOL,
    "post_tool": POST_TOOL,
    "PostToolUse": POST_TOOL,
    "stop": STOP,
    "Stop": STOP,
    "session_start": SESSION_START,
    "SessionStart": SESSION_START,
    "subagent_stop": SUBAGENT_STOP,
    "SubagentStop": SUBAGENT_STOP,
    "task_done": TASK_DONE,
    "TaskCompleted": TASK_DONE,
}

READ_TOOLS = {"Read", "Grep", "Glob", "ListDir"}
WRITE_TOOLS = {"Write", "Edit"}
DELEGATE_TOOLS = {"Task", "SendMessage"}
DONE_KINDS = {STOP, SUBAGENT_STOP, TASK_DONE}

TASK_DESCRIPTION_KEYS = ("description", "prompt", "task", "message", "content")


def _first_str(obj: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        val = obj.get(key)
        if isinstance(val, (str, int)) and val != "":
            return str(val)
    return None


@dataclass
class RawEvent:
    """A hook payload with its loosely-typed fields pulled out."""

    session_id: str
    kind: str
    raw_kind: str
    tool: Optional[str] = None
    tool_input: Dict[str, Any] = field(default_factory=dict)
    tool_response: Dict[str, Any] = field(default_factory=dict)
    file_path: Optional[str] = None
    cwd: Optional[str] = None
    model: Optional[str] = None
    source: Optional[str] = None
    tokens: Optional[int] = None


def normalize_event(payload: Dict[str, Any]) -> RawEvent:
    session_id = _first_str(payload, "session_id", "sessionId") or "unknown"
    raw_kind = _first_str(payload, "hook_event_name", "event", "type") or "unknown"
    tool_input = payload.get("tool_input")
    if not isinstance(tool_input, dict):
        tool_input = {}
    tool_response = payload.get("tool_response")
    if not isinstance(tool_response, dict):
        tool_response = {}
    tokens = payload.get("tokens")
    if isinstance(tokens, bool) or not isinstance(tokens, (int, float)):
        tokens = None
    model = payload.get("model")
    return RawEvent(
        session_id=session_id,
        kind=KIND_ALIASES.get(raw_kind, raw_kind),
        raw_kind=raw_kind,
        tool=_first_str(payload, "tool_name", "tool"),
        tool_input=tool_input,
        tool_response=tool_response,
        file_path=_first_str(tool_input, "file_path", "command", "path"),
        cwd=_first_str(payload, "cwd", "working_directory"),
        model=model if isinstance(model, str) else None,
        source=_first_str(payload, "source"),
        tokens=int(tokens) if tokens is not None else None,
    )


def active_status_for_tool(tool: Optional[str]) -> str:
    if tool in READ_TOOLS:
        return "reading"
    if tool in WRITE_TOOLS:
        return "writing"
    if tool in DELEGATE_TOOLS:
        return "delegating"
    return "tool_call"


def _quarter(text: Any) -> int:
    return math.ceil(len(text) / 4) if text else 0


def estimate_tokens(event: RawEvent) -> int:
    if event.tokens is not None:
        return event.tokens
    estimate = 0
    resp = event.tool_response
    file_blob = resp.get("file")
    if isinstance(file_blob, dict) and isinstance(file_blob.get("content"), str) and file_blob["content"]:
        estimate += _quarter(file_blob["content"])
    elif isinstance(resp.get("stdout"), str) and resp["stdout"]:
        estimate += _quarter(resp["stdout"])
    elif resp.get("filenames"):
        estimate += _quarter(json.dumps(resp["filenames"]))
    content = event.tool_input.get("content")
    if isinstance(content, str):
        estimate += _quarter(content)
    return estimate


class StatusResolver:
    """Hysteresis over tool-call events.

    An active status set by a pre-tool event survives post-tool events for
    ``hold_seconds`` before yielding to "thinking".
    """

    def __init__(self, hold_seconds: float = STATUS_HOLD_S, clock: Clock = time.time) -> None:
        self.hold_seconds = hold_seconds
        self.clock = clock

    def apply(self, agent: Agent, kind: str, tool: Optional[str]) -> str:
        now = self.clock()
        if kind == PRE_TOOL:
            agent.status = active_status_for_tool(tool)
            agent.status_set_at = max(agent.status_set_at, now)
        elif kind == POST_TOOL:
            if now - agent.status_set_at >= self.hold_seconds:
                agent.status = "thinking"
        elif kind in DONE_KINDS:
            agent.status = "done"
        elif kind == SESSION_START:
            agent.status = "starting"
        return agent.status


class TaskMatcher:
    """Pairs Task delegations with the sessions they later spawn."""

    def __init__(
        self,
        state: SwarmState,
        window_seconds: float = TASK_MATCH_WINDOW_S,
        clock: Clock = time.time,
        ids: IdFactory = new_id,
    ) -> None:
        self.state = state
        self.window_seconds = window_seconds
        self.clock = clock
        self.ids = ids

    def delegate(self, agent: Agent, description: str) -> Optional[Dict[str, Any]]:
        """Queue a pending task and return the placeholder-addressed message."""
        label = summarize_task(description)
        if not label:
            return None
        now = self.clock()
        message = {
            "id": self.ids(),
            "from": agent.id,
            "to": SUBAGENT_PLACEHOLDER,
            "text": label,
            "timestamp": to_ms(now),
        }
        pending = self.state.pending_tasks
        pending.append(
            PendingTask(
                sender=agent.id,
                label=label,
                full_description=description[:200],
                cwd=agent.cwd,
                timestamp=now,
                message_id=message["id"],
            )
        )
        if len(pending) > MAX_PENDING_TASKS:
            del pending[: len(pending) - MAX_PENDING_TASKS]
        return message

    def match(self, agent: Agent) -> Optional[PendingTask]:
        """Claim the newest eligible pending task for a freshly started session."""
        now = self.clock()
        pending = self.state.pending_tasks
        for idx in range(len(pending) - 1, -1, -1):
            task = pending[idx]
            if now - task.timestamp >= self.window_seconds or task.sender == agent.id:
                continue
            del pending[idx]
            agent.task_label = task.label
            agent.label = task.label
            if task.message_id:
                message = self.state.find_message(task.message_id)
                if message is not None and message.get("to") == SUBAGENT_PLACEHOLDER:
                    message["to"] = agent.id
            return task
        return None


class EventProcessor:
    """Single reconciliation pass for one raw event."""

    def __init__(
        self,
        state: SwarmState,
        publish: Callable[[Dict[str, Any]], Any],
        clock: Clock = time.time,
        ids: IdFactory = new_id,
        hold_seconds: float = STATUS_HOLD_S,
        match_window_seconds: float = TASK_MATCH_WINDOW_S,
    ) -> None:
        self.state = state
        self.publish = publish
        self.clock = clock
        self.ids = ids
        self.status = StatusResolver(hold_seconds, clock=clock)
        self.matcher = TaskMatcher(state, match_window_seconds, clock=clock, ids=ids)

    def process_event(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        event = normalize_event(payload)
        registry = self.state.agents
        agent = registry.get_or_create(
            event.session_id,
            label=model_label(event.model, event.session_id),
            role="lead" if event.source == "startup" else None,
            cwd=event.cwd,
        )

        self.status.apply(agent, event.kind, event.tool)
        now = self.clock()

        if event.tool and event.kind == PRE_TOOL:
            shortname = short_file(event.file_path)
            agent.activity = f"{event.tool} → {shortname}" if shortname else event.tool
        if event.tool:
            agent.last_tool = event.tool
            agent.tool_calls += 1
        if event.file_path:
            agent.last_file = event.file_path
            self._track_file(agent, event.file_path)
        agent.last_active = now

        tokens = estimate_tokens(event)
        agent.tokens += max(0, tokens)

        message = None
        if event.kind == PRE_TOOL and event.tool == "Task":
            description = _first_str(event.tool_input, *TASK_DESCRIPTION_KEYS)
            if description:
                message = self.matcher.delegate(agent, description)
        elif event.kind == PRE_TOOL and event.tool == "SendMessage" and event.tool_input.get("to"):
            message = {
                "id": self.ids(),
                "from": agent.id,
                "to": str(event.tool_input["to"]),
                "text": _first_str(event.tool_input, "message", "content") or "message",
                "timestamp": to_ms(now),
            }

        if event.kind == SESSION_START and self.state.pending_tasks:
            matched = self.matcher.match(agent)
            if matched is not None:
                log.info("session %s picked up task %r from %s", agent.id, matched.label, matched.sender)
                registry.announce(agent)

        if message is not None:
            self.state.add_message(message)

        record = {
            "id": self.ids(),
            "agentId": agent.id,
            "event": event.raw_kind,
            "tool": event.tool,
            "file": event.file_path,
            "status": agent.status,
            "activity": agent.activity,
            "timestamp": to_ms(now),
            "tokens": tokens,
        }
        self.state.events.append(record)

        self.publish({"type": "event", "event": record, "agentUpdate": agent.to_dict()})
        if message is not None:
            self.publish({"type": "message", "message": message})
        return record

    def _track_file(self, agent: Agent, file_path: str) -> None:
        agent.file_paths.append(normalize_path(file_path))
        if agent.task_label or not agent.has_placeholder_label:
            return
        inferred = infer_role_from_files(agent.file_paths)
        if inferred:
            agent.label = inferred
