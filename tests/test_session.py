import asyncio
import unittest
from unittest.mock import MagicMock

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from apicanvas.broadcaster import ProjectRooms
from apicanvas.schemas import CanvasState
from apicanvas.session import CanvasHub

IDLE = 0.1
SETTLE = 0.5


class FakeSocket:
    def __init__(self):
        self.sent = []

    async def send_text(self, data):
        self.sent.append(data)


class TestCanvasHub(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.scheduler = AsyncIOScheduler()
        self.scheduler.start()
        self.rooms = ProjectRooms()
        self.store = MagicMock()
        self.store.get_canvas.return_value = CanvasState()
        # long debounce: only closing the session writes
        self.hub = CanvasHub(self.store, self.rooms, self.scheduler, debounce_seconds=10, idle_seconds=IDLE)

    async def asyncTearDown(self):
        await self.hub.close_all()
        self.scheduler.shutdown(wait=False)
        await asyncio.sleep(0)

    async def test_open_is_idempotent(self):
        first = await self.hub.open("p1")
        second = await self.hub.open("p1")
        self.assertIs(first, second)
        self.store.get_canvas.assert_called_once_with("p1")
        self.assertEqual(self.rooms.members("p1"), {first.session_id})

    async def test_idle_session_is_flushed_and_leaves_the_group(self):
        session = await self.hub.open("p1")
        session.graph.add_node("service")

        await asyncio.sleep(SETTLE)

        self.assertIsNone(self.hub.get("p1"))
        self.store.put.assert_called_once()
        project_id, saved = self.store.put.call_args[0]
        self.assertEqual(project_id, "p1")
        self.assertEqual([n.type for n in saved.nodes], ["service"])
        self.assertEqual(self.rooms.members("p1"), set())
        self.assertFalse(session.synchronizer.pending)

    async def test_session_stays_open_while_others_are_connected(self):
        viewer = FakeSocket()
        await self.rooms.join("viewer", "p1", viewer)
        session = await self.hub.open("p1")

        await asyncio.sleep(SETTLE)
        self.assertIs(self.hub.get("p1"), session)

        self.rooms.leave("viewer", "p1", viewer)
        await asyncio.sleep(SETTLE)
        self.assertIsNone(self.hub.get("p1"))

    async def test_each_open_restarts_the_idle_timer(self):
        self.hub.idle_seconds = 0.4
        session = await self.hub.open("p1")
        for _ in range(4):
            await asyncio.sleep(0.15)
            self.assertIs(await self.hub.open("p1"), session)

        await asyncio.sleep(1.0)
        self.assertIsNone(self.hub.get("p1"))

    async def test_reopen_after_idle_close_loads_again(self):
        first = await self.hub.open("p1")
        await asyncio.sleep(SETTLE)

        second = await self.hub.open("p1")
        self.assertIsNot(first, second)
        self.assertEqual(self.store.get_canvas.call_count, 2)
        self.assertEqual(self.rooms.members("p1"), {second.session_id})

    async def test_close_cancels_the_idle_timer(self):
        await self.hub.open("p1")
        self.assertIsNotNone(self.scheduler.get_job("idle:p1"))

        await self.hub.close("p1")

        self.assertIsNone(self.scheduler.get_job("idle:p1"))
        self.assertIsNone(self.hub.get("p1"))

    async def test_discard_drops_edits_without_saving(self):
        session = await self.hub.open("p1")
        session.graph.add_node("service")

        await self.hub.discard("p1")
        await asyncio.sleep(SETTLE)

        self.store.put.assert_not_called()
        self.assertIsNone(self.hub.get("p1"))
        self.assertEqual(self.rooms.members("p1"), set())


if __name__ == "__main__":
    unittest.main()
