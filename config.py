from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

DEFAULT_PORT = 3333
WATCH_MODES = ("auto", "native", "poll")


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    try:
        return float(env.get(key, default))
    except (TypeError, ValueError):
        return default


def _env_int(env: Mapping[str, str], *keys: str, default: int) -> int:
    for key in keys:
        if env.get(key):
            try:
                return int(env[key])
            except ValueError:
                continue
    return default


@dataclass(frozen=True)
class ObserverConfig:
    home: str
    port: int = DEFAULT_PORT
    host: str = "127.0.0.1"
    watch_mode: str = "auto"
    poll_interval: float = 1.0
    watch_transcripts: bool = True
    demo: bool = False
    static_dir: Optional[str] = None

    @property
    def claude_dir(self) -> str:
        return os.path.join(self.home, ".claude")

    @property
    def events_dir(self) -> str:
        return os.path.join(self.claude_dir, "swarm-viz")

    @property
    def events_file(self) -> str:
        return os.path.join(self.events_dir, "events.jsonl")

    @property
    def teams_dir(self) -> str:
        return os.path.join(self.claude_dir, "teams")

    @property
    def tasks_dir(self) -> str:
        return os.path.join(self.claude_dir, "tasks")

    @property
    def projects_dir(self) -> str:
        return os.path.join(self.claude_dir, "projects")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ObserverConfig":
        env = os.environ if env is None else env
        home = env.get("SWARM_OBSERVER_HOME") or env.get("HOME") or env.get("USERPROFILE") or os.path.expanduser("~")
        mode = (env.get("SWARM_OBSERVER_WATCH") or "auto").strip().lower()
        return cls(
            home=home,
            port=_env_int(env, "SWARM_OBSERVER_PORT", "PORT", default=DEFAULT_PORT),
            host=env.get("SWARM_OBSERVER_HOST") or "127.0.0.1",
            watch_mode=mode if mode in WATCH_MODES else "auto",
            poll_interval=_env_float(env, "SWARM_OBSERVER_POLL_SEC", 1.0),
        )

    def with_overrides(self, **changes) -> "ObserverConfig":
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
