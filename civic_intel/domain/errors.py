from __future__ import annotations


class PipelineError(Exception):
    pass


class ValidationError(PipelineError, ValueError):
    """Malformed input; rejected immediately and never retried."""


class ComplaintNotFound(PipelineError, LookupError):
    pass


class CollaboratorUnavailable(PipelineError):
    def __init__(self, collaborator: str, message: str = "") -> None:
        self.collaborator = collaborator
        super().__init__(f"{collaborator} unavailable: {message}" if message else f"{collaborator} unavailable")


class CollaboratorTimeout(CollaboratorUnavailable):
    pass


class CircuitOpen(CollaboratorUnavailable):
    pass


class ClassificationUnavailable(PipelineError):
    pass


class NoDepartmentMapping(PipelineError):
    def __init__(self, category: str) -> None:
        self.category = category
        super().__init__(f"No department mapping for category {category}")


class InvalidTransition(PipelineError):
    pass


class ComplaintBusy(PipelineError):
    pass


class PipelineCancelled(PipelineError):
    pass


class PersistenceFailure(PipelineError):
    pass
