# Tests for dir_watch.py
import asyncio
import os
import sys
import tempfile
import threading
import unittest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from dir_watch import Debouncer, PollingWatcher, make_watcher, NativeWatcher


class DebouncerTests(unittest.IsolatedAsyncioTestCase):
    async def test_burst_collapses_to_last_call(self):
        calls = []
        debouncer = Debouncer(0.05)
        for n in range(3):
            debouncer.trigger("teams-a/config.json", calls.append, n)
            await asyncio.sleep(0.01)
        self.assertEqual(debouncer.pending(), 1)
        await asyncio.sleep(0.15)
        self.assertEqual(calls, [2])
        self.assertEqual(debouncer.pending(), 0)

    async def test_keys_are_independent(self):
        calls = []
        debouncer = Debouncer(0.02)
        debouncer.trigger("a", calls.append, "a")
        debouncer.trigger("b", calls.append, "b")
        await asyncio.sleep(0.1)
        self.assertEqual(sorted(calls), ["a", "b"])

    async def test_failing_callback_is_logged(self):
        def boom():
            raise ValueError("bad file")

        debouncer = Debouncer(0.01)
        with self.assertLogs("dir_watch", level="ERROR"):
            debouncer.trigger("x", boom)
            await asyncio.sleep(0.05)

    async def test_cancel_all(self):
        calls = []
        debouncer = Debouncer(0.02)
        debouncer.trigger("a", calls.append, "a")
        debouncer.cancel_all()
        await asyncio.sleep(0.05)
        self.assertEqual(calls, [])


class PollingWatcherTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.root = os.path.join(self.tmp.name, "teams")
        self.changes = []

    def write(self, rel, text):
        path = os.path.join(self.root, rel)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(text)
        return path

    def test_reports_added_modified_and_removed_files(self):
        watcher = PollingWatcher(self.root, self.changes.append)
        watcher.prime()
        self.write("auth/config.json", "{}")
        self.assertEqual(watcher.scan_once(), 1)
        self.assertEqual(self.changes, ["auth/config.json"])

        path = self.write("auth/config.json", '{"members": []}')
        self.assertEqual(watcher.scan_once(), 1)
        os.remove(path)
        self.assertEqual(watcher.scan_once(), 1)
        self.assertEqual(self.changes, ["auth/config.json"] * 3)
        self.assertEqual(watcher.scan_once(), 0)

    def test_prime_hides_existing_files(self):
        self.write("auth/inboxes/bob.json", "[]")
        watcher = PollingWatcher(self.root, self.changes.append)
        watcher.prime()
        self.assertEqual(watcher.scan_once(), 0)

    def test_non_recursive_ignores_subdirectories(self):
        watcher = PollingWatcher(self.root, self.changes.append, recursive=False)
        watcher.prime()
        self.write("events.jsonl", "")
        self.write("nested/other.jsonl", "")
        watcher.scan_once()
        self.assertEqual(self.changes, ["events.jsonl"])


async def wait_until(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            return False
        await asyncio.sleep(0.05)
    return True


class NativeWatcherTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.root = os.path.join(self.tmp.name, "teams")
        self.changes = []
        self.threads = set()

    def record(self, rel):
        self.threads.add(threading.get_ident())
        self.changes.append(rel)

    def write_inbox(self):
        inbox_dir = os.path.join(self.root, "auth", "inboxes")
        os.makedirs(inbox_dir, exist_ok=True)
        with open(os.path.join(inbox_dir, "bob.json"), "w", encoding="utf-8") as fh:
            fh.write("[]")

    async def test_reports_relative_paths_on_loop_thread(self):
        os.makedirs(self.root)
        watcher = NativeWatcher(self.root, self.record)
        watcher.start()
        self.addCleanup(watcher.stop)
        self.write_inbox()
        self.assertTrue(await wait_until(lambda: "auth/inboxes/bob.json" in self.changes))
        self.assertEqual(self.threads, {threading.get_ident()})

    async def test_root_created_later_is_picked_up(self):
        watcher = NativeWatcher(self.root, self.record)
        watcher.start()
        self.addCleanup(watcher.stop)
        self.assertTrue(watcher._waiting_for_root)

        os.makedirs(self.root)
        self.assertTrue(await wait_until(lambda: not watcher._waiting_for_root))
        self.write_inbox()
        self.assertTrue(await wait_until(lambda: "auth/inboxes/bob.json" in self.changes))


class MakeWatcherTests(unittest.TestCase):
    def test_modes(self):
        self.assertIsInstance(make_watcher("poll", "/tmp/x", print), PollingWatcher)
        self.assertIsInstance(make_watcher("native", "/tmp/x", print), NativeWatcher)
        self.assertIsInstance(make_watcher("auto", "/tmp/x", print), NativeWatcher)


if __name__ == "__main__":
    unittest.main()
