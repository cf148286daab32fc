"""Registry of known agents keyed by session id."""
from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Iterator, Optional

from models import Agent, Clock, placeholder_label

log = logging.getLogger(__name__)

PALETTE = (
    "#ff6b35", "#00d4aa", "#7b68ee", "#ffd166", "#ef476f",
    "#06d6a0", "#118ab2", "#e63946", "#a8dadc", "#f4a261",
    "#2a9d8f", "#e76f51", "#264653", "#d4a373", "#cdb4db",
    "#ffc8dd", "#bde0fe", "#a2d2ff", "#caffbf", "#ffd6ff",
)

DEFAULT_ROLE = "worker"


class AgentRegistry:
    def __init__(
        self,
        on_join: Optional[Callable[[Agent], None]] = None,
        clock: Clock = time.time,
    ) -> None:
        self._agents: Dict[str, Agent] = {}
        self._color_index = 0
        self._on_join = on_join
        self.clock = clock

    def set_join_listener(self, on_join: Optional[Callable[[Agent], None]]) -> None:
        self._on_join = on_join

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    def __iter__(self) -> Iterator[Agent]:
        return iter(list(self._agents.values()))

    def get(self, agent_id: str) -> Optional[Agent]:
        return self._agents.get(agent_id)

    def _next_color(self) -> str:
        color = PALETTE[self._color_index % len(PALETTE)]
        self._color_index += 1
        return color

    def get_or_create(
        self,
        agent_id: str,
        label: Optional[str] = None,
        role: Optional[str] = None,
        cwd: Optional[str] = None,
    ) -> Agent:
        """Return the agent for ``agent_id``, creating it on first sight.

        Hints never clobber better information: a label hint only replaces a
        placeholder label and a role hint only replaces the default role.
        """
        agent = self._agents.get(agent_id)
        if agent is None:
            now = self.clock()
            agent = Agent(
                id=agent_id,
                label=label or placeholder_label(agent_id),
                role=role or DEFAULT_ROLE,
                color=self._next_color(),
                last_active=now,
                first_seen=now,
                cwd=cwd,
            )
            self._agents[agent_id] = agent
            log.debug("new agent %s (%s)", agent_id, agent.label)
            self.announce(agent)
            return agent

        if label and agent.has_placeholder_label:
            agent.label = label
        if role and agent.role == DEFAULT_ROLE:
            agent.role = role
        if cwd and not agent.cwd:
            agent.cwd = cwd
        return agent

    def announce(self, agent: Agent) -> None:
        if self._on_join is not None:
            self._on_join(agent)

    def to_dict(self) -> Dict[str, dict]:
        return {agent_id: agent.to_dict() for agent_id, agent in self._agents.items()}
