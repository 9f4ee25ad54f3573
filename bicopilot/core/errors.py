"""Pipeline error types"""
from typing import Optional


class PipelineError(Exception):
    """Base class for fatal pipeline failures; carries the stage that failed."""

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class SchemaRetrievalError(PipelineError):
    """Raised when the schema repository is empty or unreachable"""
    pass


class GenerationError(PipelineError):
    """Raised when the generation backend fails"""

    def __init__(self, message: str, *, stage: Optional[str] = None, partial_text: str = ""):
        super().__init__(message, stage=stage)
        self.partial_text = partial_text


class GenerationTimeoutError(GenerationError):
    """Raised when the generation backend does not finish in time"""
    pass


class PipelineCancelledError(PipelineError):
    """Raised when a caller cancels an in-flight request"""
    pass


class InvalidTransitionError(PipelineError):
    """Raised when the orchestrator attempts an illegal state transition"""
    pass
