import abc
import asyncio
import json
import logging
from typing import Any, Dict, Optional, Protocol, Set

from pydantic import ValidationError as PydanticValidationError

from .errors import BroadcastFailure, ValidationError
from .graph_model import LOCAL, REMOTE, GraphModel
from .schemas import CanvasState, to_wire

logger = logging.getLogger(__name__)

CANVAS_UPDATE = "canvas-update"

# Sent to a member removed after a failed delivery
DROPPED_CLOSE_CODE = 1011


class Member(Protocol):
    async def send_text(self, data: str) -> None: ...


def canvas_message(project_id: str, session_id: str, state: CanvasState) -> str:
    return json.dumps(
        {
            "type": CANVAS_UPDATE,
            "payload": {"projectId": project_id, "sessionId": session_id, "state": to_wire(state)},
        }
    )


class BroadcastChannel(abc.ABC):
    """Publish/subscribe transport keyed by project. At-most-once, no acks."""

    @abc.abstractmethod
    async def join(self, session_id: str, project_id: str, member: Member) -> bool: ...

    @abc.abstractmethod
    def leave(self, session_id: str, project_id: str, member: Optional[Member] = None): ...

    @abc.abstractmethod
    def members(self, project_id: str) -> Set[str]: ...

    @abc.abstractmethod
    async def publish(self, project_id: str, exclude_session_id: Optional[str], state: CanvasState) -> int: ...


class ProjectRooms(BroadcastChannel):
    """In-process broadcast groups, one per project.

    Members are WebSockets or in-process sessions; anything with an async
    ``send_text``.
    """

    def __init__(self):
        self.rooms: Dict[str, Dict[str, Member]] = {}
        logger.info("ProjectRooms initialized")

    async def join(self, session_id: str, project_id: str, member: Member) -> bool:
        """Add a member. Returns False if another member already holds the session id."""
        room = self.rooms.setdefault(project_id, {})
        current = room.get(session_id)
        if current is not None and current is not member:
            logger.warning(f"Session id {session_id} already taken in project:{project_id}")
            return False
        room[session_id] = member
        logger.info(f"Session {session_id} joined project:{project_id}. Members: {len(room)}")
        return True

    def leave(self, session_id: str, project_id: str, member: Optional[Member] = None):
        """Remove a member. With ``member`` given, only that exact member is removed."""
        room = self.rooms.get(project_id, {})
        if member is not None and room.get(session_id) is not member:
            logger.debug(f"Session {session_id} in project:{project_id} is no longer held by this member")
            return
        if session_id in room:
            del room[session_id]
            logger.info(f"Session {session_id} left project:{project_id}. Members: {len(room)}")
            if not room:
                self.rooms.pop(project_id, None)
        else:
            logger.warning(f"Attempted to remove session {session_id} that wasn't in project:{project_id}")

    def members(self, project_id: str) -> Set[str]:
        return set(self.rooms.get(project_id, {}))

    async def publish(self, project_id: str, exclude_session_id: Optional[str], state: CanvasState) -> int:
        message = canvas_message(project_id, exclude_session_id or "", state)
        recipients = [
            (session_id, member)
            for session_id, member in self.rooms.get(project_id, {}).items()
            if session_id != exclude_session_id
        ]

        dead_sessions = []
        successful_sends = 0
        for session_id, member in recipients:
            try:
                await member.send_text(message)
                successful_sends += 1
            except Exception as e:
                logger.error(f"Failed to send to session {session_id}: {e}")
                dead_sessions.append((session_id, member))

        # Remove dead connections and tell them they are gone
        for session_id, member in dead_sessions:
            self.leave(session_id, project_id, member)
            await self._close(session_id, member)

        logger.debug(f"Broadcast to project:{project_id}: {successful_sends} successful, {len(dead_sessions)} failed")
        if recipients and successful_sends == 0:
            raise BroadcastFailure(f"No member of project:{project_id} received the update")
        return successful_sends

    async def _close(self, session_id: str, member: Member):
        close = getattr(member, "close", None)
        if close is None:
            return
        try:
            await close(code=DROPPED_CLOSE_CODE)
        except Exception as e:
            logger.debug(f"Closing dropped session {session_id} failed: {e}")


class ReplicationStrategy(abc.ABC):
    """How a snapshot received from another session is applied locally."""

    @abc.abstractmethod
    def apply(self, graph: GraphModel, state: CanvasState): ...


class OverwriteReplication(ReplicationStrategy):
    """Last event wins: the remote snapshot replaces the local graph."""

    def apply(self, graph: GraphModel, state: CanvasState):
        graph.load(state, origin=REMOTE)


class RealtimeBroadcaster:
    """Pushes every local change of a session's graph to the project's group
    and applies snapshots received from the other members."""

    def __init__(
        self,
        project_id: str,
        session_id: str,
        graph: GraphModel,
        channel: BroadcastChannel,
        strategy: Optional[ReplicationStrategy] = None,
    ):
        self.project_id = project_id
        self.session_id = session_id
        self.graph = graph
        self.channel = channel
        self.strategy = strategy or OverwriteReplication()
        self._tasks: Set[asyncio.Task] = set()

    async def join(self):
        if not await self.channel.join(self.session_id, self.project_id, self):
            raise BroadcastFailure(f"Session id {self.session_id} already in use for project:{self.project_id}")
        self.graph.subscribe(self._on_graph_change)

    def leave(self):
        self.graph.unsubscribe(self._on_graph_change)
        self.channel.leave(self.session_id, self.project_id, self)

    def _on_graph_change(self, event: str, payload: dict):
        if payload.get("origin") != LOCAL:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop, cannot broadcast {event} for project:{self.project_id}")
            return

        task = loop.create_task(self._publish(self.graph.snapshot()))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _publish(self, state: CanvasState):
        try:
            await self.channel.publish(self.project_id, self.session_id, state)
        except BroadcastFailure as e:
            logger.warning(f"Broadcast failed: {e}")

    async def publish_now(self) -> int:
        """Publish the current snapshot and report failures to the caller."""
        return await self.channel.publish(self.project_id, self.session_id, self.graph.snapshot())

    def apply_remote(self, state: Any):
        if not isinstance(state, CanvasState):
            try:
                state = CanvasState.model_validate(state)
            except PydanticValidationError as e:
                raise ValidationError(str(e))
        self.strategy.apply(self.graph, state)

    async def send_text(self, data: str):
        """Entry point used by the channel when this session is a member."""
        message = json.loads(data)
        if message.get("type") != CANVAS_UPDATE:
            return
        payload = message.get("payload", {})
        if payload.get("sessionId") == self.session_id:
            return
        try:
            self.apply_remote(payload.get("state", {}))
        except ValidationError as e:
            logger.warning(f"Ignoring malformed canvas update for project:{self.project_id}: {e}")

    async def drain(self):
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
