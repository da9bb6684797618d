class CanvasError(Exception):
    """Base class for every error raised by the canvas core."""


class NotFound(CanvasError):
    """A node, edge or project reference does not exist."""


class InvalidReference(CanvasError):
    """An edge endpoint points at a node that is not in the graph."""


class ValidationError(CanvasError):
    """A mutation payload has the wrong shape (unknown type, bad fields...)."""


class PersistenceFailure(CanvasError):
    """Reading or writing the project store failed."""


class BroadcastFailure(CanvasError):
    """The broadcast transport could not deliver an update. Never fatal."""
