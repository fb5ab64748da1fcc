from __future__ import annotations

import sys
import unittest
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from override import IDLE, PENDING, OverrideCoordinator, OverrideStateError  # noqa: E402


class OverrideCoordinatorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.coordinator = OverrideCoordinator()

    async def test_confirm_runs_continuation_once(self) -> None:
        calls = []

        async def proceed():
            calls.append("run")
            return "done"

        self.coordinator.request_override(["blocked"], [], {"position": "MRI"}, proceed)
        self.assertEqual(self.coordinator.state, PENDING)
        self.assertEqual(self.coordinator.pending.blockers, ["blocked"])

        result = await self.coordinator.confirm()

        self.assertEqual(result, "done")
        self.assertEqual(calls, ["run"])
        self.assertEqual(self.coordinator.state, IDLE)
        with self.assertRaises(OverrideStateError):
            await self.coordinator.confirm()

    async def test_plain_callable_continuation(self) -> None:
        self.coordinator.request_override(["blocked"], [], None, lambda: 7)

        self.assertEqual(await self.coordinator.confirm(), 7)

    async def test_cancel_discards_request(self) -> None:
        calls = []
        self.coordinator.request_override(["blocked"], [], None, lambda: calls.append("run"))

        self.coordinator.cancel()

        self.assertIsNone(self.coordinator.pending)
        self.assertEqual(self.coordinator.state, IDLE)
        self.assertEqual(calls, [])
        with self.assertRaises(OverrideStateError):
            self.coordinator.cancel()

    async def test_new_request_supersedes_old_one(self) -> None:
        calls = []
        self.coordinator.request_override(["first"], [], None, lambda: calls.append("first"))
        self.coordinator.request_override(["second"], [], None, lambda: calls.append("second"))

        await self.coordinator.confirm()

        self.assertEqual(calls, ["second"])

    async def test_continuation_may_queue_next_request(self) -> None:
        async def proceed():
            self.coordinator.request_override(["cascade"], [], None, lambda: None)

        self.coordinator.request_override(["blocked"], [], None, proceed)
        await self.coordinator.confirm()

        self.assertEqual(self.coordinator.state, PENDING)
        self.assertEqual(self.coordinator.pending.blockers, ["cascade"])

    async def test_failed_continuation_returns_to_idle(self) -> None:
        def proceed():
            raise RuntimeError("storage down")

        self.coordinator.request_override(["blocked"], [], None, proceed)
        with self.assertRaises(RuntimeError):
            await self.coordinator.confirm()

        self.assertEqual(self.coordinator.state, IDLE)


if __name__ == "__main__":
    unittest.main()
