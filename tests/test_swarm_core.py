# Tests for swarm_core.py
import os
import sys
import unittest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from agent_registry import AgentRegistry
from models import MAX_EVENTS, MAX_MESSAGES, Agent, SequenceIds, SwarmState
from swarm_core import (
    EventProcessor,
    StatusResolver,
    estimate_tokens,
    normalize_event,
)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_processor(clock):
    state = SwarmState(agents=AgentRegistry(clock=clock))
    published = []
    processor = EventProcessor(state, published.append, clock=clock, ids=SequenceIds("m"))
    return processor, state, published


class NormalizeEventTests(unittest.TestCase):
    def test_hook_names_map_to_kinds(self):
        event = normalize_event({"session_id": "s1", "hook_event_name": "PreToolUse", "tool_name": "Read"})
        self.assertEqual(event.kind, "pre_tool")
        self.assertEqual(event.raw_kind, "PreToolUse")

    def test_missing_fields_default(self):
        event = normalize_event({})
        self.assertEqual(event.session_id, "unknown")
        self.assertEqual(event.kind, "unknown")
        self.assertIsNone(event.tool)
        self.assertEqual(event.tool_input, {})

    def test_file_path_falls_back_to_command(self):
        event = normalize_event({"tool_input": {"command": "npm test"}})
        self.assertEqual(event.file_path, "npm test")


class TokenEstimateTests(unittest.TestCase):
    def test_file_content_and_input_content(self):
        event = normalize_event(
            {
                "tool_response": {"file": {"content": "x" * 10}},
                "tool_input": {"content": "y" * 8},
            }
        )
        self.assertEqual(estimate_tokens(event), 3 + 2)

    def test_stdout_used_without_file(self):
        event = normalize_event({"tool_response": {"stdout": "abcde"}})
        self.assertEqual(estimate_tokens(event), 2)

    def test_explicit_tokens_override(self):
        event = normalize_event({"tokens": 42, "tool_response": {"stdout": "abcde"}})
        self.assertEqual(estimate_tokens(event), 42)


class StatusResolverTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.resolver = StatusResolver(hold_seconds=3.0, clock=self.clock)
        self.agent = Agent(id="s1", label="Agent s1", color="#fff")

    def test_post_tool_within_hold_keeps_active_status(self):
        self.resolver.apply(self.agent, "pre_tool", "Read")
        self.clock.advance(1.0)
        self.assertEqual(self.resolver.apply(self.agent, "post_tool", "Read"), "reading")

    def test_post_tool_after_hold_becomes_thinking(self):
        self.resolver.apply(self.agent, "pre_tool", "Edit")
        self.clock.advance(3.5)
        self.assertEqual(self.resolver.apply(self.agent, "post_tool", "Edit"), "thinking")

    def test_repeated_pre_tool_restarts_hold(self):
        self.resolver.apply(self.agent, "pre_tool", "Read")
        self.clock.advance(2.5)
        self.resolver.apply(self.agent, "pre_tool", "Write")
        self.clock.advance(2.0)
        self.assertEqual(self.resolver.apply(self.agent, "post_tool", "Write"), "writing")
        self.clock.advance(1.5)
        self.assertEqual(self.resolver.apply(self.agent, "post_tool", "Write"), "thinking")

    def test_tool_categories(self):
        for tool, status in (("Grep", "reading"), ("Edit", "writing"), ("Task", "delegating"), ("Bash", "tool_call")):
            self.assertEqual(self.resolver.apply(self.agent, "pre_tool", tool), status)

    def test_lifecycle_kinds(self):
        self.assertEqual(self.resolver.apply(self.agent, "session_start", None), "starting")
        self.assertEqual(self.resolver.apply(self.agent, "stop", None), "done")

    def test_unknown_kind_leaves_status(self):
        self.resolver.apply(self.agent, "pre_tool", "Read")
        self.assertEqual(self.resolver.apply(self.agent, "Notification", None), "reading")


class EventProcessorTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.processor, self.state, self.published = make_processor(self.clock)

    def test_delegation_labels_spawned_session(self):
        self.processor.process_event({"event": "session_start", "session_id": "s1"})
        self.clock.advance(0.5)
        self.processor.process_event(
            {
                "event": "pre_tool",
                "session_id": "s1",
                "tool_name": "Task",
                "tool_input": {"description": "Refactor the API layer to use async handlers"},
            }
        )
        self.clock.advance(1.0)
        self.processor.process_event({"event": "session_start", "session_id": "s2"})

        s2 = self.state.agents.get("s2")
        self.assertEqual(s2.label, "Refactor the API layer to use async…")
        self.assertEqual(s2.task_label, s2.label)
        delegations = [m for m in self.state.messages if m["from"] == "s1"]
        self.assertEqual(len(delegations), 1)
        self.assertEqual(delegations[0]["to"], "s2")
        self.assertEqual(delegations[0]["text"], s2.label)
        self.assertEqual(self.state.pending_tasks, [])

    def test_delegation_expires_after_window(self):
        self.processor.process_event(
            {"event": "pre_tool", "session_id": "s1", "tool_name": "Task", "tool_input": {"prompt": "Write docs"}}
        )
        self.clock.advance(16.0)
        self.processor.process_event({"event": "session_start", "session_id": "s2"})
        self.assertEqual(self.state.agents.get("s2").label, "Agent s2")
        self.assertEqual(self.state.messages[0]["to"], "subagent")

    def test_sender_cannot_claim_own_delegation(self):
        self.processor.process_event(
            {"event": "pre_tool", "session_id": "s1", "tool_name": "Task", "tool_input": {"prompt": "Write docs"}}
        )
        self.processor.process_event({"event": "session_start", "session_id": "s1"})
        self.assertIsNone(self.state.agents.get("s1").task_label)
        self.assertEqual(len(self.state.pending_tasks), 1)

    def test_newest_pending_task_is_claimed_first(self):
        for prompt in ("Write docs", "Fix tests"):
            self.processor.process_event(
                {"event": "pre_tool", "session_id": "lead", "tool_name": "Task", "tool_input": {"prompt": prompt}}
            )
        self.processor.process_event({"event": "session_start", "session_id": "w1"})
        self.processor.process_event({"event": "session_start", "session_id": "w2"})
        self.assertEqual(self.state.agents.get("w1").label, "Fix tests")
        self.assertEqual(self.state.agents.get("w2").label, "Write docs")

    def test_counters_and_activity(self):
        self.processor.process_event(
            {"event": "pre_tool", "session_id": "s1", "tool_name": "Read", "tool_input": {"file_path": "/r/src/app.py"}}
        )
        self.processor.process_event({"event": "stop", "session_id": "s1"})
        agent = self.state.agents.get("s1")
        self.assertEqual(agent.tool_calls, 1)
        self.assertEqual(agent.last_tool, "Read")
        self.assertEqual(agent.last_file, "/r/src/app.py")
        self.assertEqual(agent.activity, "Read → app.py")
        self.assertEqual(agent.status, "done")

    def test_placeholder_label_replaced_by_inferred_role(self):
        for path in ("tests/test_a.py", "tests/test_b.py"):
            self.processor.process_event(
                {"event": "pre_tool", "session_id": "s1", "tool_name": "Read", "tool_input": {"file_path": path}}
            )
        self.assertEqual(self.state.agents.get("s1").label, "Tests")

    def test_send_message_emits_message(self):
        self.processor.process_event(
            {
                "event": "pre_tool",
                "session_id": "s1",
                "tool_name": "SendMessage",
                "tool_input": {"to": "s2", "message": "schema is ready"},
            }
        )
        self.processor.process_event(
            {"event": "post_tool", "session_id": "s1", "tool_name": "SendMessage", "tool_input": {"to": "s2"}}
        )
        self.assertEqual(len(self.state.messages), 1)
        self.assertEqual(self.state.messages[0]["text"], "schema is ready")
        types = [p["type"] for p in self.published]
        self.assertEqual(types.count("message"), 1)

    def test_model_and_startup_hints(self):
        self.processor.process_event(
            {"event": "SessionStart", "session_id": "abcdef99", "model": "claude-opus-4-6", "source": "startup"}
        )
        agent = self.state.agents.get("abcdef99")
        self.assertEqual(agent.label, "opus-4 abcdef")
        self.assertEqual(agent.role, "lead")

    def test_unknown_kind_is_recorded(self):
        record = self.processor.process_event({"event": "Notification", "session_id": "s1"})
        self.assertEqual(record["event"], "Notification")
        self.assertEqual(self.state.agents.get("s1").status, "idle")

    def test_event_buffer_evicts_oldest(self):
        for _ in range(MAX_EVENTS + 1):
            self.processor.process_event({"event": "post_tool", "session_id": "s1"})
        self.assertEqual(len(self.state.events), MAX_EVENTS)
        self.assertEqual(self.state.events[0]["id"], "m2")

    def test_message_buffer_evicts_oldest(self):
        for n in range(MAX_MESSAGES + 1):
            self.processor.process_event(
                {
                    "event": "pre_tool",
                    "session_id": "s1",
                    "tool_name": "SendMessage",
                    "tool_input": {"to": "s2", "message": f"note {n}"},
                }
            )
        self.assertEqual(len(self.state.messages), MAX_MESSAGES)
        self.assertEqual(self.state.messages[0]["text"], "note 1")
        self.assertEqual(self.state.messages[-1]["text"], f"note {MAX_MESSAGES}")

    def test_publishes_event_with_agent_update(self):
        self.processor.process_event({"event": "session_start", "session_id": "s1"})
        event_frames = [p for p in self.published if p["type"] == "event"]
        self.assertEqual(len(event_frames), 1)
        self.assertEqual(event_frames[0]["agentUpdate"]["id"], "s1")
        self.assertEqual(event_frames[0]["event"]["status"], "starting")


if __name__ == "__main__":
    unittest.main()
