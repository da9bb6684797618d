import asyncio
import threading
import unittest
from unittest.mock import MagicMock

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from apicanvas.errors import PersistenceFailure
from apicanvas.graph_model import GraphModel
from apicanvas.schemas import CanvasState
from apicanvas.synchronizer import PersistenceSynchronizer

DELAY = 0.05
SETTLE = 0.4


class SynchronizerTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.scheduler = AsyncIOScheduler()
        self.scheduler.start()
        self.graph = GraphModel()
        self.store = MagicMock()
        self.on_error = MagicMock()
        self.sync = PersistenceSynchronizer(
            "p1", self.graph, self.store, self.scheduler, delay=DELAY, on_error=self.on_error
        )
        self.sync.attach()

    async def asyncTearDown(self):
        self.sync.cancel()
        self.scheduler.shutdown(wait=False)
        await asyncio.sleep(0)


class TestDebounce(SynchronizerTestCase):
    async def test_burst_of_mutations_is_saved_once(self):
        node = self.graph.add_node("endpoint")
        for i in range(5):
            self.graph.update_node_data(node.id, {"summary": f"v{i}"})
        self.store.put.assert_not_called()

        await asyncio.sleep(SETTLE)

        self.store.put.assert_called_once()
        project_id, saved = self.store.put.call_args[0]
        self.assertEqual(project_id, "p1")
        self.assertEqual(saved, self.graph.snapshot())
        self.assertEqual(saved.nodes[0].data.summary, "v4")
        self.assertFalse(self.sync.dirty)
        self.assertIsNotNone(self.sync.last_saved_at)

    async def test_each_mutation_restarts_the_timer(self):
        self.sync.delay = 0.5
        node = self.graph.add_node("service")
        for _ in range(4):
            await asyncio.sleep(0.1)
            self.graph.move_node(node.id, {"x": 1, "y": 1})
        self.store.put.assert_not_called()

        await asyncio.sleep(1.0)
        self.store.put.assert_called_once()

    async def test_separate_bursts_are_saved_separately(self):
        self.graph.add_node("service")
        await asyncio.sleep(SETTLE)
        self.graph.add_node("model")
        await asyncio.sleep(SETTLE)
        self.assertEqual(self.store.put.call_count, 2)

    async def test_remote_load_is_not_saved(self):
        self.graph.load(CanvasState.model_validate({"nodes": [{"id": "s", "type": "service", "data": {"label": "X"}}]}))
        self.assertFalse(self.sync.pending)
        await asyncio.sleep(SETTLE)
        self.store.put.assert_not_called()
        self.assertFalse(self.sync.dirty)


class TestExplicitSave(SynchronizerTestCase):
    async def test_save_now_bypasses_and_cancels_the_timer(self):
        self.graph.add_node("service")
        self.assertTrue(self.sync.pending)

        await self.sync.save_now()

        self.assertFalse(self.sync.pending)
        self.store.put.assert_called_once()
        await asyncio.sleep(SETTLE)
        self.store.put.assert_called_once()

    async def test_saving_flag_tracks_in_flight_write(self):
        gate = threading.Event()
        self.store.put.side_effect = lambda *args: gate.wait(2)

        self.graph.add_node("service")
        task = asyncio.create_task(self.sync.save_now())
        await asyncio.sleep(DELAY)
        self.assertTrue(self.sync.saving)
        self.assertTrue(self.sync.status().saving)

        gate.set()
        await task
        self.assertFalse(self.sync.saving)
        self.assertFalse(self.sync.dirty)

    async def test_edit_during_save_keeps_graph_dirty(self):
        gate = threading.Event()
        self.store.put.side_effect = lambda *args: gate.wait(2)

        node = self.graph.add_node("service")
        task = asyncio.create_task(self.sync.save_now())
        await asyncio.sleep(DELAY / 2)
        self.graph.move_node(node.id, {"x": 5, "y": 5})
        gate.set()
        await task

        self.assertTrue(self.sync.dirty)


class TestFailures(SynchronizerTestCase):
    async def test_explicit_save_failure_is_raised(self):
        self.store.put.side_effect = PersistenceFailure("disk full")
        node = self.graph.add_node("service")

        with self.assertRaises(PersistenceFailure):
            await self.sync.save_now()

        self.assertFalse(self.sync.saving)
        self.assertTrue(self.sync.dirty)
        self.assertIn("disk full", self.sync.last_error)
        self.assertEqual(self.graph.get_node(node.id), node)

    async def test_debounced_failure_is_reported_and_not_retried(self):
        self.store.put.side_effect = PersistenceFailure("disk full")
        self.graph.add_node("service")

        await asyncio.sleep(SETTLE)

        self.store.put.assert_called_once()
        self.on_error.assert_called_once()
        self.assertIsInstance(self.on_error.call_args[0][0], PersistenceFailure)
        self.assertFalse(self.sync.saving)
        self.assertEqual(len(self.graph.nodes), 1)

    async def test_success_clears_previous_error(self):
        self.store.put.side_effect = PersistenceFailure("disk full")
        self.graph.add_node("service")
        with self.assertRaises(PersistenceFailure):
            await self.sync.save_now()

        self.store.put.side_effect = None
        await self.sync.save_now()
        self.assertIsNone(self.sync.last_error)
        self.assertFalse(self.sync.dirty)


class TestConcurrentSaves(SynchronizerTestCase):
    async def test_in_flight_save_does_not_block_the_next_one(self):
        gate = threading.Event()
        saved = []

        def slow_put(project_id, state):
            saved.append(state)
            gate.wait(2)

        self.store.put.side_effect = slow_put

        node = self.graph.add_node("service")
        await asyncio.sleep(SETTLE)
        self.assertTrue(self.sync.saving)

        self.graph.move_node(node.id, {"x": 42, "y": 0})
        await asyncio.sleep(SETTLE)

        self.assertEqual(self.store.put.call_count, 2)
        self.assertEqual(saved[-1].nodes[0].position.x, 42.0)

        gate.set()
        await self.sync.close()
        self.assertFalse(self.sync.saving)

    async def test_close_flushes_pending_edits(self):
        self.graph.add_node("service")
        await self.sync.close()

        self.store.put.assert_called_once()
        self.assertFalse(self.sync.pending)
        self.assertFalse(self.sync.dirty)


if __name__ == "__main__":
    unittest.main()
