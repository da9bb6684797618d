from typing import Literal, Optional

from pydantic import field_validator

from .base import NodeData

HttpMethod = Literal["GET", "POST", "PUT", "DELETE", "PATCH"]


class EndpointData(NodeData):
    """An HTTP operation. Method and path identify it, there is no label."""

    NODE_TYPE = "endpoint"
    DESCRIPTION = "An HTTP endpoint (method + path)"
    PARAMS = {"method": "string", "path": "string", "summary": "string"}
    DEFAULTS = {"method": "GET", "path": "/api/resource"}

    method: HttpMethod
    path: str
    summary: Optional[str] = None

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value
