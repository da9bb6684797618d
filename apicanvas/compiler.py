import logging
from typing import Any, Dict, Union

from pocketflow import Flow, Node
from pydantic import ValidationError as PydanticValidationError

import config

from .errors import ValidationError
from .nodes import EndpointData, ModelData
from .schemas import CanvasState

logger = logging.getLogger(__name__)


class DocumentShellStep(Node):
    """Creates the empty OpenAPI document."""

    def prep(self, shared):
        return shared["state"]

    def exec(self, prep_res):
        return {
            "openapi": config.OPENAPI_VERSION,
            "info": {
                "title": config.OPENAPI_TITLE,
                "version": config.OPENAPI_INFO_VERSION,
            },
            "paths": {},
            "components": {"schemas": {}},
        }

    def post(self, shared, prep_res, exec_res):
        shared["document"] = exec_res


class EndpointPathsStep(Node):
    """One operation per endpoint node, in canvas order."""

    def prep(self, shared):
        return [n for n in shared["state"].nodes if n.type == EndpointData.NODE_TYPE], shared.get("strict", False)

    def exec(self, prep_res):
        endpoints, strict = prep_res
        paths: Dict[str, Dict[str, Any]] = {}
        for node in endpoints:
            data = node.data
            if not data.path or not data.method:
                continue

            method = data.method.lower()
            operations = paths.setdefault(data.path, {})
            if method in operations:
                if strict:
                    raise ValidationError(f"Duplicate endpoint {data.method} {data.path} (node {node.id})")
                logger.warning(f"Endpoint {data.method} {data.path} declared twice, node {node.id} wins")

            operations[method] = {
                "summary": data.summary or node.label or config.DEFAULT_SUMMARY,
                "responses": {"200": {"description": "OK"}},
            }
        return paths

    def post(self, shared, prep_res, exec_res):
        shared["document"]["paths"] = exec_res


class ModelSchemasStep(Node):
    """One component schema per model node."""

    def prep(self, shared):
        return [n for n in shared["state"].nodes if n.type == ModelData.NODE_TYPE]

    def exec(self, prep_res):
        schemas: Dict[str, Any] = {}
        for node in prep_res:
            name = node.data.label or node.label or config.DEFAULT_MODEL_NAME

            properties = {}
            required = []
            for field in node.data.fields:
                if not field.name:
                    continue
                properties[field.name] = {"type": field.type or "string"}
                if field.required and field.name not in required:
                    required.append(field.name)

            schema: Dict[str, Any] = {"type": "object", "properties": properties}
            if required:
                schema["required"] = required
            schemas[name] = schema
        return schemas

    def post(self, shared, prep_res, exec_res):
        shared["document"]["components"]["schemas"] = exec_res


def build_compiler_flow() -> Flow:
    shell = DocumentShellStep()
    shell >> EndpointPathsStep() >> ModelSchemasStep()
    return Flow(start=shell)


def compile_openapi(state: Union[CanvasState, Dict[str, Any]], strict: bool = False) -> Dict[str, Any]:
    """Project a canvas snapshot into an OpenAPI 3.0 document.

    Pure: the snapshot is not modified and the same snapshot always yields
    the same document. Raw dicts are validated first, which also migrates
    legacy model field strings. With ``strict`` a duplicated
    ``(path, method)`` pair raises ``ValidationError`` instead of letting the
    later node overwrite the earlier one.
    """
    if not isinstance(state, CanvasState):
        try:
            state = CanvasState.model_validate(state)
        except PydanticValidationError as e:
            raise ValidationError(str(e))

    shared = {"state": state, "strict": strict}
    build_compiler_flow().run(shared)
    return shared["document"]
