import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Set

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

import config

from .broadcaster import BroadcastChannel, RealtimeBroadcaster
from .graph_model import REMOTE, GraphModel
from .store import ProjectStore
from .synchronizer import PersistenceSynchronizer

logger = logging.getLogger(__name__)


class CanvasSession:
    """One open canvas: graph + debounced persistence + broadcast membership."""

    def __init__(
        self,
        project_id: str,
        store: ProjectStore,
        channel: BroadcastChannel,
        scheduler: AsyncIOScheduler,
        session_id: Optional[str] = None,
        debounce_seconds: float = config.SAVE_DEBOUNCE_SECONDS,
    ):
        self.project_id = project_id
        self.session_id = session_id or uuid.uuid4().hex
        self.store = store
        self.graph = GraphModel(session_tag=self.session_id[:8])
        self.synchronizer = PersistenceSynchronizer(
            project_id,
            self.graph,
            store,
            scheduler,
            delay=debounce_seconds,
            job_tag=self.session_id,
        )
        self.broadcaster = RealtimeBroadcaster(project_id, self.session_id, self.graph, channel)

    async def open(self):
        state = await asyncio.to_thread(self.store.get_canvas, self.project_id)
        self.graph.load(state, origin=REMOTE)
        await self.broadcaster.join()
        self.synchronizer.attach()
        logger.info(f"Opened canvas for project {self.project_id} (session {self.session_id})")

    async def close(self):
        self.broadcaster.leave()
        await self.broadcaster.drain()
        await self.synchronizer.close()
        logger.info(f"Closed canvas for project {self.project_id} (session {self.session_id})")


class CanvasHub:
    """Server-side sessions, at most one per project, for the headless editing API.

    Every ``open`` re-arms an idle timer for the project. When it fires and no
    other member is connected to the project's group, the session is closed:
    pending edits are flushed and it leaves the group. Otherwise the timer is
    re-armed.
    """

    def __init__(
        self,
        store: ProjectStore,
        channel: BroadcastChannel,
        scheduler: AsyncIOScheduler,
        debounce_seconds: float = config.SAVE_DEBOUNCE_SECONDS,
        idle_seconds: float = config.SESSION_IDLE_SECONDS,
    ):
        self.store = store
        self.channel = channel
        self.scheduler = scheduler
        self.debounce_seconds = debounce_seconds
        self.idle_seconds = idle_seconds
        self.sessions: Dict[str, CanvasSession] = {}
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    def get(self, project_id: str) -> Optional[CanvasSession]:
        return self.sessions.get(project_id)

    async def open(self, project_id: str) -> CanvasSession:
        async with self._lock:
            session = self.sessions.get(project_id)
            if session is None:
                session = CanvasSession(
                    project_id,
                    self.store,
                    self.channel,
                    self.scheduler,
                    debounce_seconds=self.debounce_seconds,
                )
                await session.open()
                self.sessions[project_id] = session
            self._arm_idle_timer(project_id)
            return session

    async def close(self, project_id: str):
        async with self._lock:
            await self._close(project_id)

    async def _close(self, project_id: str):
        self._cancel_idle_timer(project_id)
        session = self.sessions.pop(project_id, None)
        if session is not None:
            await session.close()

    async def discard(self, project_id: str):
        """Drop a session without flushing, used when its project is deleted."""
        async with self._lock:
            self._cancel_idle_timer(project_id)
            session = self.sessions.pop(project_id, None)
            if session is not None:
                session.synchronizer.cancel()
                session.synchronizer.detach()
                session.broadcaster.leave()

    async def close_all(self):
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        for project_id in list(self.sessions):
            await self.close(project_id)

    # --- idle timer ---

    def _idle_job_id(self, project_id: str) -> str:
        return f"idle:{project_id}"

    def _arm_idle_timer(self, project_id: str):
        run_date = datetime.now(timezone.utc) + timedelta(seconds=self.idle_seconds)
        self.scheduler.add_job(
            self._on_idle,
            DateTrigger(run_date=run_date),
            args=[project_id],
            id=self._idle_job_id(project_id),
            replace_existing=True,
            misfire_grace_time=None,
        )

    def _cancel_idle_timer(self, project_id: str):
        try:
            self.scheduler.remove_job(self._idle_job_id(project_id))
        except JobLookupError:
            pass

    async def _on_idle(self, project_id: str):
        # The job returns at once; the close runs in its own task.
        task = asyncio.create_task(self._close_if_idle(project_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _close_if_idle(self, project_id: str):
        async with self._lock:
            session = self.sessions.get(project_id)
            if session is None or self.scheduler.get_job(self._idle_job_id(project_id)) is not None:
                # closed already, or opened again since the timer fired
                return
            others = self.channel.members(project_id) - {session.session_id}
            if others:
                logger.debug(f"Project {project_id} still has {len(others)} member(s), keeping its session")
                self._arm_idle_timer(project_id)
                return
            logger.info(f"Closing idle canvas session for project {project_id}")
            await self._close(project_id)
