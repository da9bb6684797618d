from typing import Any, ClassVar, Dict

from pydantic import BaseModel, ConfigDict


class NodeSchema(BaseModel):
    type: str
    description: str
    params: Dict[str, str] = {}  # param_name: type (string, number, boolean...)


class NodeData(BaseModel):
    """Base for the per-type data payloads carried by canvas nodes.

    Subclasses declare the registry metadata and the payload a freshly
    dropped node starts with. Unknown keys sent by the browser are kept so
    presentation-only fields survive a save/load round trip.
    """

    model_config = ConfigDict(extra="allow")

    NODE_TYPE: ClassVar[str] = "base"
    DESCRIPTION: ClassVar[str] = "Base Node"
    PARAMS: ClassVar[Dict[str, str]] = {}
    DEFAULTS: ClassVar[Dict[str, Any]] = {}

    @classmethod
    def get_schema(cls) -> NodeSchema:
        return NodeSchema(
            type=cls.NODE_TYPE,
            description=cls.DESCRIPTION,
            params=cls.PARAMS,
        )

    @classmethod
    def default(cls) -> "NodeData":
        return cls.model_validate(cls.DEFAULTS)

    def merged(self, partial: Dict[str, Any]) -> "NodeData":
        """Shallow merge, keeping every field the partial payload leaves out."""
        payload = self.model_dump(exclude_unset=True)
        payload.update(partial)
        return type(self).model_validate(payload)
