"""Fan-out of state deltas to connected subscribers."""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from models import SwarmState, Team, jdump

log = logging.getLogger(__name__)

SNAPSHOT_EVENTS = 80
SNAPSHOT_MESSAGES = 30
STATE_EVENTS = 100
STATE_MESSAGES = 50
CONTEXT_INBOX = 50


def _tail(items, count: int) -> List[Any]:
    if count <= 0:
        return []
    return list(items)[-count:]


class Subscriber:
    """One connected client: an outbound queue of serialized frames."""

    def __init__(self, maxsize: int = 1000) -> None:
        self.queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=maxsize)
        self.open = True

    def offer(self, data: str) -> bool:
        if not self.open:
            return False
        try:
            self.queue.put_nowait(data)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if not self.open:
            return
        self.open = False
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    async def frames(self) -> AsyncIterator[str]:
        while self.open or not self.queue.empty():
            data = await self.queue.get()
            if data is None:
                return
            yield data


class Broadcaster:
    def __init__(self, state: SwarmState, server_cwd: Optional[str] = None) -> None:
        self.state = state
        self.server_cwd = server_cwd or os.getcwd()
        self._subscribers: Set[Subscriber] = set()
        self._sequence = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, maxsize: int = 1000) -> Subscriber:
        subscriber = Subscriber(maxsize=maxsize)
        subscriber.offer(jdump(self.snapshot()))
        self._subscribers.add(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        subscriber.close()
        self._subscribers.discard(subscriber)

    def broadcast(self, payload: Dict[str, Any]) -> int:
        self._sequence += 1
        event = dict(payload)
        event["seq"] = self._sequence
        data = jdump(event)
        delivered = 0
        dead: List[Subscriber] = []
        for subscriber in list(self._subscribers):
            if not subscriber.open:
                continue
            if subscriber.offer(data):
                delivered += 1
            else:
                dead.append(subscriber)
        for subscriber in dead:
            log.warning("dropping subscriber with full queue")
            self.unsubscribe(subscriber)
        return delivered

    def send(self, subscriber: Subscriber, payload: Dict[str, Any]) -> bool:
        return subscriber.offer(jdump(payload))

    # ----- read side -----

    def teams_snapshot(self) -> Dict[str, Any]:
        return {name: team.to_dict() for name, team in self.state.teams.items()}

    def snapshot(self) -> Dict[str, Any]:
        return {
            "type": "snapshot",
            "agents": self.state.agents.to_dict(),
            "recentEvents": _tail(self.state.events, SNAPSHOT_EVENTS),
            "recentMessages": _tail(self.state.messages, SNAPSHOT_MESSAGES),
            "serverCwd": self.server_cwd,
            "teams": self.teams_snapshot(),
        }

    def state_view(self) -> Dict[str, Any]:
        return {
            "agents": self.state.agents.to_dict(),
            "recentEvents": _tail(self.state.events, STATE_EVENTS),
            "recentMessages": _tail(self.state.messages, STATE_MESSAGES),
        }

    def agent_context(self, agent_id: str) -> Dict[str, Any]:
        agent = self.state.agents.get(agent_id)
        context: Dict[str, Any] = {
            "type": "agent_context",
            "agentId": agent_id,
            "agent": agent.to_dict() if agent else None,
            "inbox": [],
            "tasks": [],
            "teamInfo": None,
            "spawnPrompt": None,
        }
        if agent is None or not agent.team_name:
            return context
        team: Optional[Team] = self.state.teams.get(agent.team_name)
        if team is None:
            return context

        member_name = agent.team_member_name or agent.label or agent_id.split("@")[0]
        inbox = (
            team.inboxes.get(member_name)
            or team.inboxes.get(agent.label)
            or team.inboxes.get(agent_id)
            or []
        )
        context["inbox"] = _tail(inbox, CONTEXT_INBOX)

        names = {member_name, agent.label, agent_id}
        context["tasks"] = [
            task
            for task in team.tasks.values()
            if task.get("owner") in names or task.get("assignee") == member_name
        ]
        context["allTasks"] = list(team.tasks.values())
        context["teamInfo"] = {
            "name": agent.team_name,
            "description": team.config.get("description"),
            "memberCount": len(team.members),
            "members": [
                {
                    "name": m.get("name"),
                    "agentId": m.get("agentId"),
                    "agentType": m.get("agentType"),
                    "color": m.get("color"),
                }
                for m in team.members
            ],
        }
        context["spawnPrompt"] = agent.spawn_prompt
        return context
