import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Set

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

import config

from .errors import CanvasError, PersistenceFailure
from .graph_model import LOCAL, GraphModel
from .schemas import SyncStatus
from .store import ProjectStore

logger = logging.getLogger(__name__)


class PersistenceSynchronizer:
    """Debounced whole-document saves of one graph to the project store.

    Each local change re-arms a one-shot ``DateTrigger`` job under a fixed id,
    so only the state after a quiet period of ``delay`` seconds is written.
    Saves run on a worker thread and are never cancelled; when two of them
    race, the store keeps whichever write lands last.
    """

    def __init__(
        self,
        project_id: str,
        graph: GraphModel,
        store: ProjectStore,
        scheduler: AsyncIOScheduler,
        delay: float = config.SAVE_DEBOUNCE_SECONDS,
        job_tag: str = "",
        on_error: Optional[Callable[[PersistenceFailure], None]] = None,
    ):
        self.project_id = project_id
        self.graph = graph
        self.store = store
        self.scheduler = scheduler
        self.delay = delay
        self.on_error = on_error
        self.job_id = f"save:{project_id}:{job_tag}" if job_tag else f"save:{project_id}"

        self.dirty = False
        self.last_error: Optional[str] = None
        self.last_saved_at: Optional[datetime] = None
        self._in_flight = 0
        self._tasks: Set[asyncio.Task] = set()

    @property
    def saving(self) -> bool:
        return self._in_flight > 0

    def status(self) -> SyncStatus:
        return SyncStatus(
            saving=self.saving,
            dirty=self.dirty,
            last_error=self.last_error,
            last_saved_at=self.last_saved_at,
        )

    def attach(self):
        self.graph.subscribe(self._on_graph_change)

    def detach(self):
        self.graph.unsubscribe(self._on_graph_change)

    def _on_graph_change(self, event: str, payload: dict):
        if payload.get("origin") != LOCAL:
            return
        self.dirty = True
        self.schedule()

    # --- debounce timer ---

    def schedule(self):
        """(Re)start the quiet-period timer."""
        run_date = datetime.now(timezone.utc) + timedelta(seconds=self.delay)
        self.scheduler.add_job(
            self._on_timer,
            DateTrigger(run_date=run_date),
            id=self.job_id,
            replace_existing=True,
            misfire_grace_time=None,
        )

    def cancel(self):
        try:
            self.scheduler.remove_job(self.job_id)
        except JobLookupError:
            pass

    @property
    def pending(self) -> bool:
        return self.scheduler.get_job(self.job_id) is not None

    async def _on_timer(self):
        # The job returns at once; the write runs in its own task.
        task = asyncio.create_task(self._save_in_background())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _save_in_background(self):
        try:
            await self._save("debounce")
        except PersistenceFailure as e:
            if self.on_error:
                self.on_error(e)

    # --- saving ---

    async def save_now(self):
        """Explicit save: skips the debounce and raises on failure."""
        self.cancel()
        await self._save("explicit")

    async def _save(self, reason: str):
        snapshot = self.graph.snapshot()
        revision = self.graph.revision
        self._in_flight += 1
        logger.info(f"Saving project {self.project_id} ({reason}, revision {revision})")
        try:
            await asyncio.to_thread(self.store.put, self.project_id, snapshot)
        except CanvasError as e:
            failure = e if isinstance(e, PersistenceFailure) else PersistenceFailure(str(e))
            self.last_error = str(failure)
            logger.error(f"Failed to save project {self.project_id}: {failure}")
            raise failure
        finally:
            self._in_flight -= 1

        self.last_error = None
        self.last_saved_at = datetime.now(timezone.utc)
        if self.graph.revision == revision:
            self.dirty = False

    async def close(self):
        """Cancel the timer, flush unsaved local edits and wait for running saves."""
        self.cancel()
        self.detach()
        if self.dirty:
            try:
                await self._save("close")
            except PersistenceFailure:
                pass  # already logged, edits stay in memory
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
