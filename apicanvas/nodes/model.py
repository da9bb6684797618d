from typing import List

from pydantic import BaseModel, field_validator

from .base import NodeData


class ModelField(BaseModel):
    name: str
    type: str = "string"
    required: bool = False


def parse_legacy_fields(fields: str) -> List[dict]:
    """Parse the old "id: string, name: string" notation.

    Entries are split on commas, then on the first colon, with whitespace
    trimmed. Entries without a name are dropped and a missing type means
    "string".
    """
    parsed = []
    for entry in fields.split(","):
        parts = [part.strip() for part in entry.split(":")]
        name = parts[0]
        if not name:
            continue
        field_type = parts[1] if len(parts) > 1 else ""
        parsed.append({"name": name, "type": field_type or "string", "required": False})
    return parsed


class ModelData(NodeData):
    """A data model whose fields become an OpenAPI component schema."""

    NODE_TYPE = "model"
    DESCRIPTION = "A data model (fields become a schema)"
    PARAMS = {"label": "string", "fields": "list"}
    DEFAULTS = {
        "label": "New Model",
        "fields": [{"name": "id", "type": "string", "required": True}],
    }

    label: str
    fields: List[ModelField] = []

    @field_validator("fields", mode="before")
    @classmethod
    def _migrate_legacy_fields(cls, value):
        if isinstance(value, str):
            return parse_legacy_fields(value)
        return value
