"""Scripted multi-agent session for ``--demo``.

Everything goes through the same reconciliation pass as live hook events;
only the team directory is simulated in memory.
"""
from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

from models import Team, to_ms

log = logging.getLogger(__name__)

TEAM_NAME = "demo-auth-refactor"
LEAD_ID = "lead-001"

AGENT_DEFS: List[Dict[str, Any]] = [
    {"id": LEAD_ID, "name": "team-lead", "role": "lead", "agentType": "team-lead", "color": "#ff6b35",
     "prompt": "You are the team lead coordinating an OAuth2 implementation. Delegate tasks to specialists, track progress, and resolve blockers.",
     "files": ["IMPLEMENTATION_PLAN.md", "specs/auth-flow.md", "README.md", "package.json"],
     "tools": ["Read", "Task", "Bash", "Write"]},
    {"id": "ralph-api-002", "name": "api-worker", "taskLabel": "Refactor API auth layer", "role": "worker",
     "agentType": "teammate", "color": "#00d4aa",
     "prompt": "Refactor the API authentication layer to use OAuth2 with JWT tokens.",
     "files": ["src/api/routes.ts", "src/api/auth.ts", "src/api/middleware.ts", "src/api/types.ts"],
     "tools": ["Read", "Write", "Edit", "Bash", "Grep"]},
    {"id": "ralph-ui-003", "name": "ui-worker", "taskLabel": "Build auth frontend", "role": "worker",
     "agentType": "teammate", "color": "#7b68ee",
     "prompt": "Build the authentication frontend: login form, OAuth callback handler and token refresh UI.",
     "files": ["src/components/AuthForm.tsx", "src/components/Dashboard.tsx", "src/components/UserProfile.tsx"],
     "tools": ["Read", "Write", "Edit", "Bash"]},
    {"id": "ralph-tests-004", "name": "test-worker", "taskLabel": "Write test coverage", "role": "worker",
     "agentType": "teammate", "color": "#ffd166",
     "prompt": "Write test coverage for the OAuth2 implementation: unit, integration and E2E.",
     "files": ["tests/api.test.ts", "tests/e2e/login.spec.ts", "tests/unit/auth.test.ts"],
     "tools": ["Read", "Write", "Bash", "Grep"]},
    {"id": "ralph-db-005", "name": "db-worker", "taskLabel": "Run DB migration for users", "role": "worker",
     "agentType": "teammate", "color": "#ef476f",
     "prompt": "Create and run database migrations for users, session tokens and OAuth provider links.",
     "files": ["src/db/migrations/001_add_users.sql", "src/db/schema.ts", "prisma/schema.prisma"],
     "tools": ["Read", "Write", "Bash", "Edit"]},
    {"id": "sub-research-006", "name": "researcher", "taskLabel": "Research JWT best practices", "role": "subagent",
     "agentType": "teammate", "color": "#06d6a0",
     "prompt": "Research current JWT and OAuth2 best practices and summarize findings.",
     "files": ["specs/glossary.md", "IMPLEMENTATION_PLAN.md"],
     "tools": ["Read", "WebSearch", "Write"]},
]

MESSAGES = [
    "API types defined, ready for frontend",
    "Missing index on users table, fixing",
    "Tests at 94%, need JWT refresh edges",
    "Blocked: need token schema from DB",
    "Schema updated, run migrations",
    "JWT expiry set to 15min, looks solid",
    "PR #47 ready, all checks green",
    "Migration verified on staging",
]

TASK_SEED = [
    {"id": "1", "subject": "Research JWT/OAuth2 best practices", "status": "completed", "owner": "researcher"},
    {"id": "2", "subject": "Create users table migration", "status": "completed", "owner": "db-worker"},
    {"id": "3", "subject": "Build JWT middleware", "status": "completed", "owner": "api-worker", "blockedBy": ["2"]},
    {"id": "4", "subject": "Build login page (AuthForm.tsx)", "status": "in_progress", "owner": "ui-worker", "blockedBy": ["3"]},
    {"id": "5", "subject": "OAuth2 callback handler", "status": "in_progress", "owner": "api-worker", "blockedBy": ["1"]},
    {"id": "6", "subject": "Unit tests for auth logic", "status": "in_progress", "owner": "test-worker", "blockedBy": ["3"]},
    {"id": "7", "subject": "E2E login flow tests", "status": "blocked", "owner": "test-worker", "blockedBy": ["4", "5"]},
    {"id": "8", "subject": "Token refresh UI component", "status": "pending", "owner": "ui-worker", "blockedBy": ["5"]},
]


def _iso(ts: float, minus_seconds: float = 0.0) -> str:
    when = datetime.fromtimestamp(ts, tz=timezone.utc) - timedelta(seconds=minus_seconds)
    return when.isoformat().replace("+00:00", "Z")


def demo_member(defn: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "name": defn["name"],
        "agentId": defn["id"],
        "agentType": defn["agentType"],
        "color": defn["color"],
        "prompt": defn["prompt"],
        "cwd": "/project",
    }


def build_demo_team(now: float) -> Team:
    inboxes: Dict[str, List[Dict[str, Any]]] = {
        "api-worker": [
            {"from": "team-lead", "text": "Start with the JWT middleware; api/auth.ts is the entry point.",
             "timestamp": _iso(now, 300), "read": True},
            {"from": "db-worker", "text": "Schema is live. Run `prisma generate` to pick it up.",
             "timestamp": _iso(now, 120), "read": False},
        ],
        "team-lead": [
            {"from": "api-worker", "text": "JWT middleware is done and tested.", "timestamp": _iso(now, 30), "read": False},
        ],
    }
    return Team(
        name=TEAM_NAME,
        config={
            "teamName": TEAM_NAME,
            "description": "OAuth2 authentication implementation with JWT tokens",
            "members": [demo_member(d) for d in AGENT_DEFS],
        },
        inboxes=inboxes,
        tasks={task["id"]: dict(task) for task in TASK_SEED},
    )


class DemoDriver:
    def __init__(self, hub, rng: Optional[random.Random] = None, speed: float = 1.0) -> None:
        self.hub = hub
        self.rng = rng or random.Random()
        self.speed = speed
        self.team: Optional[Team] = None
        self._timers: Set[asyncio.TimerHandle] = set()

    async def _sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds / self.speed)

    def _event(self, payload: Dict[str, Any]) -> None:
        self.hub.processor.process_event(payload)

    def _started(self) -> List[Dict[str, Any]]:
        return [d for d in AGENT_DEFS if d["id"] in self.hub.state.agents]

    def seed(self) -> None:
        self.team = build_demo_team(self.hub.clock())
        self.hub.state.teams[TEAM_NAME] = self.team
        self._event(
            {
                "session_id": LEAD_ID,
                "hook_event_name": "SessionStart",
                "model": "claude-opus-4-6",
                "source": "startup",
                "cwd": "/project",
            }
        )
        self.hub.teams.register_member(TEAM_NAME, demo_member(AGENT_DEFS[0]))

    async def spawn(self, defn: Dict[str, Any]) -> None:
        self._event(
            {
                "session_id": LEAD_ID,
                "hook_event_name": "PreToolUse",
                "tool_name": "Task",
                "tool_input": {"description": defn["taskLabel"]},
            }
        )
        await self._sleep(0.8 + self.rng.random() * 0.4)
        self._event(
            {"session_id": defn["id"], "hook_event_name": "SessionStart", "model": "claude-sonnet-4-5", "cwd": "/project"}
        )
        agent = self.hub.teams.register_member(TEAM_NAME, demo_member(defn))
        self.hub.state.agents.announce(agent)

    def tick(self) -> None:
        started = self._started()
        if not started:
            return
        weights = [4 if d["role"] == "worker" else 1.5 if d["role"] == "lead" else 2 for d in started]
        defn = self.rng.choices(started, weights=weights)[0]
        tools = [t for t in defn["tools"] if t != "Task"] or ["Read"]
        tool = self.rng.choice(tools)
        path = self.rng.choice(defn["files"])
        tool_input: Dict[str, Any] = {"file_path": path}
        if tool == "Bash":
            tool_input["command"] = f'npm test -- --grep "{path}"'
        self._event({"session_id": defn["id"], "hook_event_name": "PreToolUse", "tool_name": tool, "tool_input": tool_input})
        loop = asyncio.get_running_loop()
        self._timers = {h for h in self._timers if h.when() > loop.time()}
        delay = (0.5 + self.rng.random() * 1.5) / self.speed
        self._timers.add(loop.call_later(delay, self._finish_tool, defn, tool, path))
        if self.rng.random() > 0.65:
            self._chat(defn, started)
        if self.rng.random() > 0.88:
            self._advance_task()

    def _finish_tool(self, defn: Dict[str, Any], tool: str, path: str) -> None:
        response: Dict[str, Any] = {}
        if tool == "Read":
            response["file"] = {"content": "x" * (200 + self.rng.randrange(2000))}
        elif tool == "Bash":
            response["stdout"] = "PASS: 12 tests passed\n"
        self._event(
            {
                "session_id": defn["id"],
                "hook_event_name": "PostToolUse",
                "tool_name": tool,
                "tool_input": {"file_path": path},
                "tool_response": response,
            }
        )

    def _chat(self, defn: Dict[str, Any], started: List[Dict[str, Any]]) -> None:
        others = [d for d in started if d["id"] != defn["id"]]
        if not others or self.team is None:
            return
        target = self.rng.choice(others)
        text = self.rng.choice(MESSAGES)
        now = self.hub.clock()
        message = {"id": self.hub.processor.ids(), "from": defn["id"], "to": target["id"], "text": text, "timestamp": to_ms(now)}
        self.hub.state.add_message(message)
        self.hub.broadcaster.broadcast({"type": "message", "message": message})
        inbox = self.team.inboxes.setdefault(target["name"], [])
        entry = {"from": defn["name"], "text": text, "timestamp": _iso(now), "read": False}
        inbox.append(entry)
        self.hub.broadcaster.broadcast(
            {
                "type": "inbox_update",
                "teamName": TEAM_NAME,
                "agentName": target["name"],
                "newMessages": [entry],
                "totalCount": len(inbox),
            }
        )

    def _advance_task(self) -> None:
        if self.team is None:
            return
        tasks = self.team.tasks
        ready = [
            t for t in tasks.values()
            if t["status"] in ("pending", "blocked")
            and all(tasks.get(dep, {}).get("status") == "completed" for dep in t.get("blockedBy", []))
        ]
        if ready:
            task = self.rng.choice(ready)
            task["status"] = "in_progress"
            self.hub.broadcaster.broadcast({"type": "task_update", "teamName": TEAM_NAME, "task": task})
        in_progress = [t for t in tasks.values() if t["status"] == "in_progress"]
        if in_progress and self.rng.random() > 0.5:
            task = self.rng.choice(in_progress)
            task["status"] = "completed"
            self.hub.broadcaster.broadcast({"type": "task_update", "teamName": TEAM_NAME, "task": task})

    async def run(self) -> None:
        log.info("demo mode: simulating %d agents", len(AGENT_DEFS))
        try:
            self.seed()
            await self._sleep(1.5)
            for defn in AGENT_DEFS[1:]:
                await self.spawn(defn)
                await self._sleep(2.0 + self.rng.random() * 3.0)
            while True:
                self.tick()
                await self._sleep(0.5 + self.rng.random() * 1.5)
        except asyncio.CancelledError:
            self.cancel_pending()
            return

    def cancel_pending(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
