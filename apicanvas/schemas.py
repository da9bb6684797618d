import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .node_registry import registry
from .nodes import EndpointData, ImageData, ModelData, NodeSchema, ServiceData, StickyNoteData

logger = logging.getLogger(__name__)

AnyNodeData = Union[ServiceData, EndpointData, ModelData, ImageData, StickyNoteData]

# Re-exported for the /api/nodes response model
NodeMetadata = NodeSchema


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0


class Edge(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    source: str
    target: str
    sourceHandle: Optional[str] = None
    targetHandle: Optional[str] = None


class Node(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    type: str  # one of registry.types(), fixed at creation
    position: Position = Field(default_factory=Position)
    data: AnyNodeData
    label: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _resolve_data_variant(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        values = dict(values)

        # Old canvases stored coordinates at the top level of the node
        if "position" not in values and ("x" in values or "y" in values):
            values["position"] = {"x": values.pop("x", 0.0), "y": values.pop("y", 0.0)}

        node_type = values.get("type")
        data_cls = registry.node_classes.get(node_type)
        if data_cls is None:
            raise ValueError(f"Unknown node type: {node_type!r}")

        data = values.get("data")
        if isinstance(data, BaseModel) and not isinstance(data, data_cls):
            data = data.model_dump(exclude_unset=True)
        if not isinstance(data, data_cls):
            try:
                values["data"] = data_cls.model_validate(data or {})
            except PydanticValidationError as e:
                raise ValueError(f"Invalid data for {node_type} node: {e.errors(include_url=False)}")
        return values


class CanvasState(BaseModel):
    nodes: List[Node] = []
    edges: List[Edge] = []

    @model_validator(mode="after")
    def _check_references(self) -> "CanvasState":
        seen = set()
        for node in self.nodes:
            if node.id in seen:
                raise ValueError(f"Duplicate node id: {node.id}")
            seen.add(node.id)

        kept = [e for e in self.edges if e.source in seen and e.target in seen]
        if len(kept) != len(self.edges):
            logger.warning(f"Pruned {len(self.edges) - len(kept)} dangling edge(s) from canvas")
            self.edges = kept
        return self


def to_wire(state: CanvasState) -> Dict[str, Any]:
    """The JSON document that is both persisted and broadcast."""
    return state.model_dump(mode="json", exclude_none=True)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Project(CamelModel):
    id: str
    name: str
    owner_id: str
    canvas_state: CanvasState = Field(default_factory=CanvasState)
    created_at: datetime = Field(default_factory=utcnow)


class ProjectCreate(CamelModel):
    name: str = Field(min_length=1, max_length=255)


class ProjectUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    canvas_state: Optional[CanvasState] = None


class NodeCreate(BaseModel):
    type: str
    position: Position = Field(default_factory=Position)
    data: Optional[Dict[str, Any]] = None
    label: Optional[str] = None


class NodeDataPatch(BaseModel):
    data: Dict[str, Any]


class EdgeCreate(BaseModel):
    source: str
    target: str
    sourceHandle: Optional[str] = None
    targetHandle: Optional[str] = None


class SyncStatus(CamelModel):
    saving: bool
    dirty: bool
    last_error: Optional[str] = None
    last_saved_at: Optional[datetime] = None
