"""Exception hierarchy for the engine."""

from __future__ import annotations


class AgenticRagError(Exception):
    """Base class for engine errors."""


class ConfigurationError(AgenticRagError, ValueError):
    """Invalid run configuration, rejected before any state transition."""


class ChunkingError(AgenticRagError):
    """Content could not be chunked or embedded."""


class CollaboratorError(AgenticRagError):
    """An external collaborator failed or timed out."""


class GenerationError(CollaboratorError):
    """The text-generation service failed."""


class SearchBackendError(CollaboratorError):
    """The managed search backend failed."""

    def __init__(self, message: str, status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code


class EvaluationParseError(AgenticRagError):
    """The external scorer returned output that could not be parsed."""
