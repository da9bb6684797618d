from typing import Dict, Optional

from .base import NodeData


class ServiceData(NodeData):
    """A deployable service box grouping endpoints and models."""

    NODE_TYPE = "service"
    DESCRIPTION = "A backend service or component"
    PARAMS = {"label": "string", "description": "string", "metadata": "object"}
    DEFAULTS = {"label": "New Service", "description": ""}

    label: str
    description: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None
