from .annotation import ImageData, StickyNoteData
from .base import NodeData, NodeSchema
from .endpoint import EndpointData, HttpMethod
from .model import ModelData, ModelField, parse_legacy_fields
from .service import ServiceData

__all__ = [
    "NodeData",
    "NodeSchema",
    "ServiceData",
    "EndpointData",
    "HttpMethod",
    "ModelData",
    "ModelField",
    "parse_legacy_fields",
    "ImageData",
    "StickyNoteData",
]
