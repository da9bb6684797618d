from .compiler import compile_openapi
from .graph_model import GraphModel
from .schemas import CanvasState, Edge, Node, Position

__all__ = ["compile_openapi", "GraphModel", "CanvasState", "Edge", "Node", "Position"]
