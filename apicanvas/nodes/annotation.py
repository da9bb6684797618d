from typing import Optional

from .base import NodeData


class ImageData(NodeData):
    NODE_TYPE = "image"
    DESCRIPTION = "An image asset placed on the canvas"
    PARAMS = {"label": "string", "url": "string", "width": "number", "height": "number"}
    DEFAULTS = {"url": ""}

    label: Optional[str] = None
    url: str
    width: Optional[float] = None
    height: Optional[float] = None


class StickyNoteData(NodeData):
    NODE_TYPE = "stickyNote"
    DESCRIPTION = "A sticky note for documentation"
    PARAMS = {"text": "string"}
    DEFAULTS = {"text": "New Note"}

    text: str
