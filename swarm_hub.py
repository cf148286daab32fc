#!/usr/bin/env python3
"""Owns observer state and wires file watchers to the reconciliation passes."""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from typing import Any, Dict, List, Optional

from agent_registry import AgentRegistry
from broadcaster import Broadcaster
from config import ObserverConfig
from demo import DemoDriver
from dir_watch import DEBOUNCE_S, Debouncer, start_watcher
from event_tailer import JsonlTailer, TranscriptTailer
from models import Agent, Clock, IdFactory, SwarmState, new_id
from swarm_core import EventProcessor
from team_store import TeamStateStore, is_safe_name

log = logging.getLogger(__name__)


def ensure_events_file(path: str) -> None:
    """Create the events directory and an empty log; failures are fatal."""
    os.makedirs(os.path.dirname(path), exist_ok=True)
    if not os.path.exists(path):
        with open(path, "a", encoding="utf-8"):
            pass


class SwarmHub:
    def __init__(
        self,
        config: ObserverConfig,
        clock: Clock = time.time,
        ids: IdFactory = new_id,
        debounce_s: float = DEBOUNCE_S,
    ) -> None:
        self.config = config
        self.clock = clock
        self.state = SwarmState(agents=AgentRegistry(clock=clock))
        self.broadcaster = Broadcaster(self.state)
        self.state.agents.set_join_listener(self._on_agent_join)
        self.processor = EventProcessor(self.state, self.broadcaster.broadcast, clock=clock, ids=ids)
        self.teams = TeamStateStore(
            self.state,
            self.broadcaster.broadcast,
            teams_dir=config.teams_dir,
            tasks_dir=config.tasks_dir,
            clock=clock,
            ids=ids,
        )
        self.debouncer = Debouncer(debounce_s)
        self.tailer = JsonlTailer(config.events_file)
        self.transcripts = TranscriptTailer(config.projects_dir)
        self.tasks: List[asyncio.Task] = []
        self._watchers: List[Any] = []
        self._stopping = False

    def _on_agent_join(self, agent: Agent) -> None:
        self.broadcaster.broadcast({"type": "agent_join", "agent": agent.to_dict()})

    # ----- lifecycle -----

    async def start(self) -> None:
        if self.config.demo:
            driver = DemoDriver(self)
            self.tasks.append(asyncio.create_task(driver.run(), name="swarm-demo"))
            return

        ensure_events_file(self.config.events_file)
        self.tailer.offset = os.path.getsize(self.config.events_file)

        found = self.teams.read_all()
        if found:
            log.info("found %d agent team(s): %s", found, ", ".join(sorted(self.state.teams)))

        mode = self.config.watch_mode
        interval = self.config.poll_interval
        self._watchers.append(
            start_watcher(mode, self.config.events_dir, self.on_events_dir_change, recursive=False, poll_interval=interval)
        )
        self._watchers.append(start_watcher(mode, self.config.teams_dir, self.on_teams_change, poll_interval=interval))
        self._watchers.append(start_watcher(mode, self.config.tasks_dir, self.on_tasks_change, poll_interval=interval))
        if self.config.watch_transcripts and os.path.isdir(self.config.projects_dir):
            self._watchers.append(
                start_watcher(mode, self.config.projects_dir, self.on_transcript_change, poll_interval=interval)
            )

    async def stop(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        self.debouncer.cancel_all()
        for watcher in self._watchers:
            watcher.stop()
        for task in self.tasks:
            task.cancel()

    # ----- handlers -----

    def ingest(self, payloads) -> int:
        count = 0
        for payload in payloads:
            try:
                self.processor.process_event(payload)
            except Exception:
                log.exception("failed to process event")
                continue
            count += 1
        return count

    def on_events_dir_change(self, rel_path: str) -> None:
        if rel_path != os.path.basename(self.config.events_file):
            return
        self.ingest(self.tailer.read_new())

    def on_teams_change(self, rel_path: str) -> None:
        self.debouncer.trigger(f"teams-{rel_path}", self.teams.handle_team_change, rel_path)

    def on_tasks_change(self, rel_path: str) -> None:
        if not rel_path.endswith(".json"):
            return
        self.debouncer.trigger(f"task-{rel_path}", self.teams.handle_task_change, rel_path)

    def on_transcript_change(self, rel_path: str) -> None:
        self.ingest(self.transcripts.handle_change(rel_path))

    # ----- subscriber requests -----

    def handle_client_message(self, msg: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Answer an inbound subscriber message; returns the reply, if any."""
        kind = msg.get("type")
        if kind == "get_agent_context":
            return self.broadcaster.agent_context(str(msg.get("agentId") or ""))
        if kind == "send_inbox_message":
            return self.send_inbox_message(
                msg.get("teamName"), msg.get("targetAgent"), msg.get("fromName"), msg.get("text")
            )
        log.debug("ignoring client message type %r", kind)
        return None

    def send_inbox_message(
        self,
        team_name: Optional[str],
        target_agent: Optional[str],
        from_name: Optional[str],
        text: Optional[str],
    ) -> Dict[str, Any]:
        if not team_name or not target_agent or not text:
            return {"type": "inbox_message_error", "error": "teamName, targetAgent and text are required"}
        if not is_safe_name(str(team_name)) or not is_safe_name(str(target_agent)):
            return {
                "type": "inbox_message_error",
                "teamName": team_name,
                "targetAgent": target_agent,
                "error": "invalid teamName or targetAgent",
            }
        message = self.teams.write_inbox_message(str(team_name), str(target_agent), str(from_name or "observer"), str(text))
        if message is None:
            return {
                "type": "inbox_message_error",
                "teamName": team_name,
                "targetAgent": target_agent,
                "error": "write failed",
            }
        return {"type": "inbox_message_sent", "teamName": team_name, "targetAgent": target_agent, "message": message}


def install_signal_handlers(loop: asyncio.AbstractEventLoop, set_event: asyncio.Event) -> None:
    def _handler(*_: Any) -> None:
        set_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handler)
        except NotImplementedError:
            pass
