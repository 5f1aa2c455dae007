"""Exception types shared across the pipeline."""

from __future__ import annotations


class Cancelled(Exception):
    """The run was cancelled; never converted into an output row."""

    def __init__(self, message: str = "Aborted") -> None:
        super().__init__(message)


class HttpError(Exception):
    """Non-success HTTP response from a model endpoint."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status

    @property
    def is_transient(self) -> bool:
        return self.status == 429 or self.status >= 500


class ConfigurationError(ValueError):
    """Invalid run configuration; raised before any work starts."""


class BatchLimitError(ConfigurationError):
    """A prepared batch is empty or exceeds the request/byte ceilings."""


class DecisionParseError(ValueError):
    """Model output could not be decoded into a decision."""


class BatchStateError(RuntimeError):
    """A batch job is not in a state that allows the requested action."""
