import logging
from typing import Any, Dict, List, Optional, Type

from .errors import ValidationError
from .nodes import EndpointData, ImageData, ModelData, NodeData, NodeSchema, ServiceData, StickyNoteData

logger = logging.getLogger(__name__)


class NodeRegistry:
    def __init__(self):
        self.node_classes: Dict[str, Type[NodeData]] = {}

        # Explicit registration
        self.register(ServiceData)
        self.register(EndpointData)
        self.register(ModelData)
        # Visual/Utility Nodes (ignored by the OpenAPI compiler)
        self.register(ImageData)
        self.register(StickyNoteData)

    def register(self, cls: Type[NodeData]):
        if hasattr(cls, "NODE_TYPE"):
            self.node_classes[cls.NODE_TYPE] = cls

    def types(self) -> List[str]:
        return list(self.node_classes)

    def get_data_class(self, node_type: str) -> Type[NodeData]:
        cls = self.node_classes.get(node_type)
        if cls is None:
            raise ValidationError(f"Unknown node type: {node_type!r}")
        return cls

    def default_data(self, node_type: str, overrides: Optional[Dict[str, Any]] = None) -> NodeData:
        cls = self.get_data_class(node_type)
        data = cls.default()
        if overrides:
            data = data.merged(overrides)
        return data

    def get_all_metadata(self) -> List[NodeSchema]:
        return [cls.get_schema() for cls in self.node_classes.values()]


registry = NodeRegistry()
