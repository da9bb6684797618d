import itertools
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .errors import InvalidReference, NotFound, ValidationError
from .node_registry import registry
from .schemas import CanvasState, Edge, Node, Position

logger = logging.getLogger(__name__)

LOCAL = "local"
REMOTE = "remote"

Listener = Callable[[str, Dict[str, Any]], None]


class IdGenerator:
    """Session tag + monotonic counter, so ids from concurrent sessions never collide."""

    def __init__(self, session_tag: Optional[str] = None):
        self.session_tag = session_tag or uuid.uuid4().hex[:8]
        self._counter = itertools.count(1)

    def next_id(self, prefix: str) -> str:
        return f"{prefix}-{self.session_tag}-{next(self._counter)}"


class GraphModel:
    """The in-memory canvas of one open project.

    Local mutations and remote snapshots go through the same object. Every
    change bumps ``revision`` and notifies subscribers with
    ``callback(event, payload)``; ``payload["origin"]`` tells local edits
    apart from snapshots loaded from the store or another session.
    """

    def __init__(self, session_tag: Optional[str] = None):
        self.ids = IdGenerator(session_tag)
        self._nodes: Dict[str, Node] = {}
        self._edges: List[Edge] = []
        self._listeners: List[Listener] = []
        self.selected_node_id: Optional[str] = None
        self.revision = 0

    # --- listeners ---

    def subscribe(self, callback: Listener):
        self._listeners.append(callback)

    def unsubscribe(self, callback: Listener):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _emit(self, event: str, payload: Dict[str, Any]):
        self.revision += 1
        for callback in list(self._listeners):
            try:
                callback(event, payload)
            except Exception as e:
                # A broken listener must not undo or block the edit
                logger.error(f"Graph listener failed on {event}: {e}")

    # --- reads ---

    @property
    def nodes(self) -> List[Node]:
        return list(self._nodes.values())

    @property
    def edges(self) -> List[Edge]:
        return list(self._edges)

    def get_node(self, node_id: str) -> Node:
        node = self._nodes.get(node_id)
        if node is None:
            raise NotFound(f"Node {node_id} not found")
        return node

    def snapshot(self) -> CanvasState:
        return CanvasState(nodes=self.nodes, edges=self.edges).model_copy(deep=True)

    # --- mutations ---

    def load(self, snapshot: Union[CanvasState, Dict[str, Any]], origin: str = REMOTE):
        """Replace the whole graph. No merge: the incoming snapshot wins."""
        if not isinstance(snapshot, CanvasState):
            try:
                snapshot = CanvasState.model_validate(snapshot)
            except PydanticValidationError as e:
                raise ValidationError(str(e))
        snapshot = snapshot.model_copy(deep=True)

        self._nodes = {node.id: node for node in snapshot.nodes}
        self._edges = list(snapshot.edges)
        if self.selected_node_id not in self._nodes:
            self.selected_node_id = None
        self._emit("loaded", {"origin": origin, "nodes": len(self._nodes), "edges": len(self._edges)})

    def add_node(
        self,
        node_type: str,
        position: Union[Position, Dict[str, float], None] = None,
        data: Optional[Dict[str, Any]] = None,
        label: Optional[str] = None,
    ) -> Node:
        try:
            node_data = registry.default_data(node_type, data)
            position = Position.model_validate(position or {})
        except PydanticValidationError as e:
            raise ValidationError(str(e))

        node_id = self.ids.next_id(node_type)
        while node_id in self._nodes:
            node_id = self.ids.next_id(node_type)

        node = Node(id=node_id, type=node_type, position=position, data=node_data, label=label)
        self._nodes[node_id] = node
        self._emit("node_added", {"origin": LOCAL, "node_id": node_id})
        return node

    def update_node_data(self, node_id: str, partial: Dict[str, Any]) -> Node:
        node = self.get_node(node_id)
        try:
            data = node.data.merged(partial)
        except PydanticValidationError as e:
            raise ValidationError(str(e))

        updated = node.model_copy(update={"data": data})
        self._nodes[node_id] = updated
        self._emit("node_updated", {"origin": LOCAL, "node_id": node_id})
        return updated

    def move_node(self, node_id: str, position: Union[Position, Dict[str, float]]) -> Node:
        node = self.get_node(node_id)
        try:
            position = Position.model_validate(position)
        except PydanticValidationError as e:
            raise ValidationError(str(e))

        moved = node.model_copy(update={"position": position})
        self._nodes[node_id] = moved
        self._emit("node_moved", {"origin": LOCAL, "node_id": node_id})
        return moved

    def delete_node(self, node_id: str) -> Node:
        node = self.get_node(node_id)
        del self._nodes[node_id]
        self._edges = [e for e in self._edges if e.source != node_id and e.target != node_id]
        if self.selected_node_id == node_id:
            self.selected_node_id = None
        self._emit("node_deleted", {"origin": LOCAL, "node_id": node_id})
        return node

    def connect(
        self,
        source_id: str,
        target_id: str,
        source_handle: Optional[str] = None,
        target_handle: Optional[str] = None,
    ) -> Edge:
        for endpoint in (source_id, target_id):
            if endpoint not in self._nodes:
                raise InvalidReference(f"Edge endpoint {endpoint} is not a node of this canvas")

        edge = Edge(
            id=self.ids.next_id("edge"),
            source=source_id,
            target=target_id,
            sourceHandle=source_handle,
            targetHandle=target_handle,
        )
        self._edges.append(edge)
        self._emit("edge_added", {"origin": LOCAL, "edge_id": edge.id})
        return edge

    def delete_edge(self, edge_id: str) -> Edge:
        for i, edge in enumerate(self._edges):
            if edge.id == edge_id:
                del self._edges[i]
                self._emit("edge_deleted", {"origin": LOCAL, "edge_id": edge_id})
                return edge
        raise NotFound(f"Edge {edge_id} not found")

    def select_node(self, node_id: Optional[str]):
        if node_id is not None:
            self.get_node(node_id)
        self.selected_node_id = node_id
