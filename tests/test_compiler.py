import json
import unittest

from apicanvas.compiler import compile_openapi
from apicanvas.errors import ValidationError
from apicanvas.schemas import CanvasState


def endpoint(node_id, method, path, summary=None, label=None):
    data = {"method": method, "path": path}
    if summary is not None:
        data["summary"] = summary
    node = {"id": node_id, "type": "endpoint", "position": {"x": 0, "y": 0}, "data": data}
    if label is not None:
        node["label"] = label
    return node


def model(node_id, label, fields, node_label=None):
    node = {"id": node_id, "type": "model", "position": {"x": 0, "y": 0}, "data": {"label": label, "fields": fields}}
    if node_label is not None:
        node["label"] = node_label
    return node


class TestOpenAPICompiler(unittest.TestCase):
    def test_empty_canvas_yields_document_shell(self):
        doc = compile_openapi(CanvasState())
        self.assertEqual(doc["openapi"], "3.0.0")
        self.assertEqual(doc["info"], {"title": "Generated API", "version": "1.0.0"})
        self.assertEqual(doc["paths"], {})
        self.assertEqual(doc["components"], {"schemas": {}})

    def test_endpoint_becomes_operation(self):
        doc = compile_openapi({"nodes": [endpoint("e1", "GET", "/users", summary="List")]})
        operation = doc["paths"]["/users"]["get"]
        self.assertEqual(operation["summary"], "List")
        self.assertEqual(operation["responses"]["200"], {"description": "OK"})

    def test_methods_share_a_path(self):
        doc = compile_openapi(
            {"nodes": [endpoint("e1", "GET", "/users", "List"), endpoint("e2", "POST", "/users", "Create")]}
        )
        self.assertEqual(sorted(doc["paths"]["/users"]), ["get", "post"])

    def test_summary_fallbacks(self):
        doc = compile_openapi(
            {"nodes": [endpoint("e1", "GET", "/a", label="Fetch A"), endpoint("e2", "GET", "/b")]}
        )
        self.assertEqual(doc["paths"]["/a"]["get"]["summary"], "Fetch A")
        self.assertEqual(doc["paths"]["/b"]["get"]["summary"], "No summary")

    def test_endpoint_without_path_is_skipped(self):
        doc = compile_openapi({"nodes": [endpoint("e1", "DELETE", "")]})
        self.assertEqual(doc["paths"], {})

    def test_duplicate_operation_later_node_wins(self):
        state = {"nodes": [endpoint("e1", "GET", "/users", "First"), endpoint("e2", "get", "/users", "Second")]}
        with self.assertLogs("apicanvas.compiler", level="WARNING"):
            doc = compile_openapi(state)
        self.assertEqual(doc["paths"]["/users"]["get"]["summary"], "Second")

    def test_duplicate_operation_in_strict_mode(self):
        state = {"nodes": [endpoint("e1", "GET", "/users", "First"), endpoint("e2", "GET", "/users", "Second")]}
        with self.assertRaises(ValidationError):
            compile_openapi(state, strict=True)

    def test_model_becomes_schema(self):
        fields = [
            {"name": "id", "type": "string", "required": True},
            {"name": "age", "type": "number", "required": False},
        ]
        doc = compile_openapi({"nodes": [model("m1", "User", fields)]})
        schema = doc["components"]["schemas"]["User"]
        self.assertEqual(schema["type"], "object")
        self.assertEqual(schema["properties"], {"id": {"type": "string"}, "age": {"type": "number"}})
        self.assertEqual(schema["required"], ["id"])

    def test_empty_field_type_defaults_to_string(self):
        doc = compile_openapi({"nodes": [model("m1", "Tag", [{"name": "value", "type": ""}, {"name": "", "type": "x"}])]})
        schema = doc["components"]["schemas"]["Tag"]
        self.assertEqual(schema["properties"], {"value": {"type": "string"}})
        self.assertNotIn("required", schema)

    def test_model_name_fallbacks(self):
        doc = compile_openapi(
            {"nodes": [model("m1", "", [], node_label="Account"), model("m2", "", [])]}
        )
        self.assertEqual(sorted(doc["components"]["schemas"]), ["Account", "UnnamedModel"])

    def test_legacy_field_string(self):
        doc = compile_openapi({"nodes": [model("m1", "User", "id: string, age: number, nickname")]})
        self.assertEqual(
            doc["components"]["schemas"]["User"]["properties"],
            {"id": {"type": "string"}, "age": {"type": "number"}, "nickname": {"type": "string"}},
        )

    def test_other_node_types_are_ignored(self):
        doc = compile_openapi(
            {"nodes": [
                {"id": "s", "type": "service", "data": {"label": "Billing"}},
                {"id": "i", "type": "image", "data": {"url": "https://example.com/x.png"}},
                {"id": "n", "type": "stickyNote", "data": {"text": "todo"}},
            ]}
        )
        self.assertEqual(doc["paths"], {})
        self.assertEqual(doc["components"]["schemas"], {})

    def test_compilation_is_pure_and_deterministic(self):
        state = CanvasState.model_validate(
            {"nodes": [
                endpoint("e1", "GET", "/users", "List"),
                endpoint("e2", "PUT", "/users/{id}", "Replace"),
                model("m1", "User", [{"name": "id", "type": "string", "required": True}]),
            ]}
        )
        before = state.model_copy(deep=True)

        first = compile_openapi(state)
        second = compile_openapi(state)

        self.assertEqual(json.dumps(first, sort_keys=True), json.dumps(second, sort_keys=True))
        self.assertIsNot(first, second)
        self.assertEqual(state, before)

    def test_invalid_canvas(self):
        with self.assertRaises(ValidationError):
            compile_openapi({"nodes": [{"id": "x", "type": "nonsense", "data": {}}]})


if __name__ == "__main__":
    unittest.main()
