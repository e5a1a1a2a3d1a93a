from __future__ import annotations

from typing import List


class PipelineError(Exception):
    """Base class for output pipeline errors."""


class ConfigurationError(PipelineError, ValueError):
    """Raised when sink or pipeline configuration is invalid."""


class UnknownSinkTypeError(ConfigurationError, KeyError):
    """Raised when a sink config names a type missing from the registry."""

    def __init__(self, sink_type: str, known: List[str]):
        self.sink_type = sink_type
        self.known = sorted(known)
        super().__init__(f"Unknown sink type '{sink_type}'. Known sink types: {', '.join(self.known)}")

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return str(self.args[0])


class SinkInitializationError(PipelineError):
    """Raised when a sink cannot acquire its destination."""


class SinkCloseError(PipelineError):
    """Raised after every sink close was attempted and at least one failed."""

    def __init__(self, errors: List[BaseException]):
        self.errors = list(errors)
        details = "; ".join(f"{type(e).__name__}: {e}" for e in self.errors)
        super().__init__(f"{len(self.errors)} sink(s) failed to close: {details}")


class PipelineStateError(PipelineError, RuntimeError):
    """Raised when the pipeline lifecycle is used out of order."""


class RecordShapeError(PipelineError, ValueError):
    """A record does not fit the column layout fixed by the first record."""
