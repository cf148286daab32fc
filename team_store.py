"""Directory-backed team state: config, per-member inboxes and task files.

Layout::

    <teams_dir>/<team>/config.json
    <teams_dir>/<team>/inboxes/<member>.json
    <tasks_dir>/<team>/<task id>.json

Inbox files are assumed append-only; new messages are detected by length.
"""
from __future__ import annotations

import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from models import Agent, Clock, IdFactory, SwarmState, Team, new_id, to_ms

log = logging.getLogger(__name__)

CONFIG_BASENAME = "config.json"
INBOX_DIRNAME = "inboxes"
VISUAL_TEXT_MAX = 100


def read_json_safe(path: str) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = handle.read().strip()
    except OSError:
        return None
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        log.debug("ignoring unparseable json in %s", path)
        return None


def _inbox_messages(data: Any) -> Optional[List[Dict[str, Any]]]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("messages"), list):
        return data["messages"]
    return None


def _json_files(directory: str) -> List[str]:
    try:
        names = os.listdir(directory)
    except OSError:
        return []
    return sorted(name for name in names if name.endswith(".json"))


def diff_inbox(previous: List[Dict[str, Any]], current: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Messages appended since ``previous`` was read."""
    return list(current[len(previous):])


def normalize_task(task: Dict[str, Any], fallback_id: str) -> Dict[str, Any]:
    return {
        "id": task.get("id") or fallback_id,
        "subject": task.get("subject") or task.get("title") or fallback_id,
        "description": task.get("description") or "",
        "status": task.get("status") or "pending",
        "owner": task.get("owner") or task.get("assignee") or None,
        "blockedBy": task.get("blockedBy") or task.get("dependencies") or [],
        "blocks": task.get("blocks") or [],
        "activeForm": task.get("activeForm") or None,
    }


def _split(rel_path: str) -> List[str]:
    return [part for part in rel_path.replace("\\", "/").split("/") if part]


def is_safe_name(name: str) -> bool:
    """True if ``name`` is a single path component (no separators, not a dot dir)."""
    if not name or name in (".", ".."):
        return False
    if "/" in name or "\\" in name or "\0" in name:
        return False
    return os.path.basename(name) == name


class TeamStateStore:
    def __init__(
        self,
        state: SwarmState,
        publish: Callable[[Dict[str, Any]], Any],
        teams_dir: str,
        tasks_dir: str,
        clock: Clock = time.time,
        ids: IdFactory = new_id,
    ) -> None:
        self.state = state
        self.publish = publish
        self.teams_dir = teams_dir
        self.tasks_dir = tasks_dir
        self.clock = clock
        self.ids = ids

    # ----- reading -----

    def read_config(self, team_name: str) -> Optional[Dict[str, Any]]:
        config = read_json_safe(os.path.join(self.teams_dir, team_name, CONFIG_BASENAME))
        return config if isinstance(config, dict) else None

    def read_inboxes(self, team_name: str) -> Dict[str, List[Dict[str, Any]]]:
        inbox_dir = os.path.join(self.teams_dir, team_name, INBOX_DIRNAME)
        inboxes: Dict[str, List[Dict[str, Any]]] = {}
        for name in _json_files(inbox_dir):
            messages = _inbox_messages(read_json_safe(os.path.join(inbox_dir, name)))
            if messages is not None:
                inboxes[name[: -len(".json")]] = messages
        return inboxes

    def read_tasks(self, team_name: str) -> Dict[str, Dict[str, Any]]:
        task_dir = os.path.join(self.tasks_dir, team_name)
        tasks: Dict[str, Dict[str, Any]] = {}
        for name in _json_files(task_dir):
            task = read_json_safe(os.path.join(task_dir, name))
            if isinstance(task, dict) and task.get("id") is not None:
                tasks[str(task["id"])] = task
        return tasks

    def team_names(self) -> List[str]:
        try:
            names = os.listdir(self.teams_dir)
        except OSError:
            return []
        return sorted(n for n in names if os.path.isdir(os.path.join(self.teams_dir, n)))

    def read_all(self) -> int:
        """Initial load of every team; returns how many were found."""
        found = 0
        for team_name in self.team_names():
            if self._reload_team(team_name) is not None:
                found += 1
        return found

    def _reload_team(self, team_name: str) -> Optional[Team]:
        config = self.read_config(team_name)
        if config is None:
            return None
        team = Team(
            name=team_name,
            config=config,
            inboxes=self.read_inboxes(team_name),
            tasks=self.read_tasks(team_name),
        )
        self.state.teams[team_name] = team
        self.register_members(team)
        return team

    # ----- agents -----

    def register_members(self, team: Team) -> List[Agent]:
        return [self.register_member(team.name, member) for member in team.members]

    def register_member(self, team_name: str, member: Dict[str, Any]) -> Agent:
        """Create or enrich the agent for one team member.

        Team fields always apply; the member name replaces the label unless
        the label came from a task delegation.
        """
        name = member.get("name")
        agent_id = member.get("agentId") or f"{name}@{team_name}"
        agent = self.state.agents.get_or_create(
            agent_id,
            label=name or agent_id,
            role="lead" if member.get("agentType") == "team-lead" else "worker",
            cwd=member.get("cwd") or None,
        )
        agent.team_name = team_name
        agent.team_agent_id = agent_id
        agent.team_member_name = name or agent_id.split("@")[0]
        agent.agent_type = member.get("agentType")
        if member.get("color"):
            agent.color = member["color"]
        if member.get("prompt"):
            agent.spawn_prompt = member["prompt"]
        if name and not agent.task_label:
            agent.label = name
        return agent

    def _resolve_member(self, team: Team, name: str) -> str:
        for member in team.members:
            if member.get("name") == name and member.get("agentId") in self.state.agents:
                return member["agentId"]
        scoped = f"{name}@{team.name}"
        if scoped in self.state.agents:
            return scoped
        return name

    # ----- change handling -----

    def handle_team_change(self, rel_path: str) -> None:
        """Reconcile after ``rel_path`` (relative to the teams dir) changed."""
        parts = _split(rel_path)
        if not parts:
            return
        team_name = parts[0]
        previous = self.state.teams.get(team_name)
        team = self._reload_team(team_name)
        if team is None:
            return

        if len(parts) > 1 and parts[1] == CONFIG_BASENAME:
            self.publish(
                {
                    "type": "team_update",
                    "teamName": team_name,
                    "config": team.config,
                    "members": team.members,
                }
            )

        # First sighting of a team reports only the inbox that changed.
        if previous is not None:
            names = list(team.inboxes)
        elif len(parts) > 2 and parts[1] == INBOX_DIRNAME and parts[2].endswith(".json"):
            names = [parts[2][: -len(".json")]]
        else:
            names = []
        prev_inboxes = previous.inboxes if previous else {}
        for agent_name in names:
            messages = team.inboxes.get(agent_name, [])
            fresh = diff_inbox(prev_inboxes.get(agent_name, []), messages)
            if fresh:
                self._publish_inbox(team, agent_name, fresh, len(messages))

    def _publish_inbox(self, team: Team, agent_name: str, fresh: List[Dict[str, Any]], total: int) -> None:
        self.publish(
            {
                "type": "inbox_update",
                "teamName": team.name,
                "agentName": agent_name,
                "newMessages": fresh,
                "totalCount": total,
            }
        )
        for msg in fresh:
            if not isinstance(msg, dict) or not msg.get("from"):
                continue
            text = msg.get("text")
            if not isinstance(text, str):
                text = json.dumps(text, ensure_ascii=False)
            visual = {
                "id": self.ids(),
                "from": self._resolve_member(team, str(msg["from"])),
                "to": self._resolve_member(team, agent_name),
                "text": text[:VISUAL_TEXT_MAX],
                "timestamp": to_ms(self.clock()),
            }
            self.state.add_message(visual)
            self.publish({"type": "message", "message": visual})

    def handle_task_change(self, rel_path: str) -> None:
        """Reconcile after ``rel_path`` (relative to the tasks dir) changed."""
        if not rel_path.endswith(".json"):
            return
        parts = _split(rel_path)
        if len(parts) < 2:
            return
        team_name = parts[0]
        team = self.state.teams.get(team_name)
        if team is not None:
            team.tasks = self.read_tasks(team_name)
        task = read_json_safe(os.path.join(self.tasks_dir, *parts))
        if not isinstance(task, dict):
            return
        fallback = parts[-1][: -len(".json")]
        self.publish({"type": "task_update", "teamName": team_name, "task": normalize_task(task, fallback)})

    # ----- writing -----

    def write_inbox_message(
        self, team_name: str, target_agent: str, from_name: str, text: str
    ) -> Optional[Dict[str, Any]]:
        """Append a message to a member inbox via temp file + rename.

        Raises ValueError if either name would leave the teams directory.
        """
        if not is_safe_name(team_name) or not is_safe_name(target_agent):
            raise ValueError(f"invalid inbox name: {team_name!r}/{target_agent!r}")
        inbox_dir = os.path.join(self.teams_dir, team_name, INBOX_DIRNAME)
        inbox_file = os.path.join(inbox_dir, f"{target_agent}.json")
        message = {
            "from": from_name,
            "text": text,
            "timestamp": datetime.fromtimestamp(self.clock(), tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "read": False,
        }
        tmp_file = inbox_file + ".tmp"
        try:
            os.makedirs(inbox_dir, exist_ok=True)
            messages = list(_inbox_messages(read_json_safe(inbox_file)) or [])
            messages.append(message)
            with open(tmp_file, "w", encoding="utf-8") as handle:
                json.dump(messages, handle, indent=2, ensure_ascii=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_file, inbox_file)
        except (OSError, ValueError) as exc:
            log.warning("failed to write inbox %s: %s", inbox_file, exc)
            try:
                os.remove(tmp_file)
            except OSError:
                pass
            return None
        log.info("wrote inbox message %s -> %s@%s", from_name, target_agent, team_name)
        return message
