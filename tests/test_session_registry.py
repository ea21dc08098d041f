# Tests for session_registry.py
import asyncio
import os
import sys
import unittest
from unittest.mock import AsyncMock, MagicMock

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from session_registry import SessionRegistry


class SessionRegistryTests(unittest.IsolatedAsyncioTestCase):
    async def test_cancel_runs_local_and_remote_abort(self):
        remote = AsyncMock()
        registry = SessionRegistry(remote_abort=remote)
        abort = MagicMock()
        registry.register("lane-1", abort)
        registry.update_session_id("lane-1", "ses_1")

        self.assertTrue(registry.is_active("lane-1"))
        self.assertEqual(registry.session_id("lane-1"), "ses_1")
        self.assertTrue(await registry.cancel("lane-1"))

        abort.assert_called_once_with()
        remote.assert_awaited_once_with("ses_1")
        self.assertFalse(registry.is_active("lane-1"))

    async def test_cancel_unknown_lane(self):
        remote = AsyncMock()
        registry = SessionRegistry(remote_abort=remote)
        self.assertFalse(await registry.cancel("missing"))
        remote.assert_not_awaited()

    async def test_cancel_without_session_skips_remote(self):
        remote = AsyncMock()
        registry = SessionRegistry(remote_abort=remote)
        registry.register("lane-1", MagicMock())
        self.assertTrue(await registry.cancel("lane-1"))
        remote.assert_not_awaited()

    async def test_remote_failure_still_clears_entry(self):
        remote = AsyncMock(side_effect=RuntimeError("server gone"))
        registry = SessionRegistry(remote_abort=remote)
        registry.register("lane-1", MagicMock(side_effect=RuntimeError("already closed")), "ses_1")

        self.assertTrue(await registry.cancel("lane-1"))
        self.assertFalse(registry.is_active("lane-1"))
        self.assertEqual(registry.active(), [])

    async def test_remote_abort_is_bounded(self):
        async def hang(_session_id):
            await asyncio.sleep(10)

        registry = SessionRegistry(remote_abort=hang, remote_timeout=0.05)
        registry.register("lane-1", MagicMock(), "ses_1")
        self.assertTrue(await asyncio.wait_for(registry.cancel("lane-1"), 2))
        self.assertFalse(registry.is_active("lane-1"))

    async def test_remove_only_drops_matching_turn(self):
        registry = SessionRegistry()
        old_abort, new_abort = MagicMock(), MagicMock()
        registry.register("lane-1", old_abort)
        registry.register("lane-1", new_abort)

        registry.remove("lane-1", old_abort)
        self.assertTrue(registry.is_active("lane-1"))
        registry.remove("lane-1", new_abort)
        self.assertFalse(registry.is_active("lane-1"))

    async def test_active_lists_lanes(self):
        registry = SessionRegistry()
        registry.register("b", MagicMock())
        registry.register("a", MagicMock())
        self.assertEqual(registry.active(), ["a", "b"])


if __name__ == "__main__":
    unittest.main()
