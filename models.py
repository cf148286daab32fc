"""Shared record types and the owned state object for the observer."""
from __future__ import annotations

import itertools
import json
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

MAX_EVENTS = 500
MAX_MESSAGES = 100
MAX_FILE_PATHS = 30
PLACEHOLDER_PREFIX = "Agent "
SUBAGENT_PLACEHOLDER = "subagent"

Clock = Callable[[], float]
IdFactory = Callable[[], str]


def jdump(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def new_id() -> str:
    return uuid.uuid4().hex[:9]


class SequenceIds:
    """Deterministic id factory: ``prefix1``, ``prefix2``, ..."""

    def __init__(self, prefix: str = "id") -> None:
        self.prefix = prefix
        self._counter = itertools.count(1)

    def __call__(self) -> str:
        return f"{self.prefix}{next(self._counter)}"


def to_ms(ts: Optional[float]) -> Optional[int]:
    if ts is None:
        return None
    return int(ts * 1000)


def placeholder_label(agent_id: str) -> str:
    return f"{PLACEHOLDER_PREFIX}{agent_id[:8]}"


@dataclass
class Agent:
    id: str
    label: str
    color: str
    role: str = "worker"
    status: str = "idle"
    status_set_at: float = 0.0
    last_tool: Optional[str] = None
    last_file: Optional[str] = None
    last_active: float = 0.0
    first_seen: float = 0.0
    activity: Optional[str] = None
    tokens: int = 0
    tool_calls: int = 0
    cwd: Optional[str] = None
    file_paths: Deque[str] = field(default_factory=lambda: deque(maxlen=MAX_FILE_PATHS))
    task_label: Optional[str] = None
    team_name: Optional[str] = None
    team_agent_id: Optional[str] = None
    team_member_name: Optional[str] = None
    agent_type: Optional[str] = None
    spawn_prompt: Optional[str] = None

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def has_placeholder_label(self) -> bool:
        return self.label.startswith(PLACEHOLDER_PREFIX)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "shortId": self.short_id,
            "label": self.label,
            "role": self.role,
            "color": self.color,
            "status": self.status,
            "statusSetAt": to_ms(self.status_set_at) if self.status_set_at else None,
            "lastTool": self.last_tool,
            "lastFile": self.last_file,
            "lastActive": to_ms(self.last_active),
            "firstSeen": to_ms(self.first_seen),
            "activity": self.activity,
            "tokens": self.tokens,
            "toolCalls": self.tool_calls,
            "cwd": self.cwd,
            "filePaths": list(self.file_paths),
        }
        optional = {
            "taskLabel": self.task_label,
            "teamName": self.team_name,
            "teamAgentId": self.team_agent_id,
            "teamMemberName": self.team_member_name,
            "agentType": self.agent_type,
            "spawnPrompt": self.spawn_prompt,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        return data


@dataclass
class Team:
    name: str
    config: Dict[str, Any]
    inboxes: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    tasks: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def members(self) -> List[Dict[str, Any]]:
        members = self.config.get("members")
        if not isinstance(members, list):
            return []
        return [m for m in members if isinstance(m, dict)]

    def to_dict(self) -> Dict[str, Any]:
        return {"config": self.config, "inboxes": self.inboxes, "tasks": self.tasks}


@dataclass
class PendingTask:
    sender: str
    label: str
    full_description: str
    cwd: Optional[str]
    timestamp: float
    message_id: Optional[str] = None


@dataclass
class SwarmState:
    """Everything the reconciliation passes read and mutate.

    One instance per running observer; handlers receive it by reference.
    """

    agents: Any
    events: Deque[Dict[str, Any]] = field(default_factory=lambda: deque(maxlen=MAX_EVENTS))
    messages: Deque[Dict[str, Any]] = field(default_factory=lambda: deque(maxlen=MAX_MESSAGES))
    teams: Dict[str, Team] = field(default_factory=dict)
    pending_tasks: List[PendingTask] = field(default_factory=list)

    def add_message(self, message: Dict[str, Any]) -> None:
        self.messages.append(message)

    def find_message(self, message_id: str) -> Optional[Dict[str, Any]]:
        for message in self.messages:
            if message.get("id") == message_id:
                return message
        return None

