from __future__ import annotations


class WorkflowError(Exception):
    code = "WorkflowError"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class CallerError(WorkflowError):
    """Bad request from the caller. Reported, audited as ``reject``, never retried."""

    code = "CallerError"


class NoSuchTransitionError(CallerError):
    code = "NoSuchTransition"


class InsufficientCapabilityError(CallerError):
    code = "InsufficientCapability"


class SelfApprovalForbiddenError(CallerError):
    code = "SelfApprovalForbidden"


class DocumentNotEditableError(CallerError):
    code = "DocumentNotEditable"


class CommentRequiredError(CallerError):
    code = "CommentRequired"


class DocumentNotFoundError(CallerError):
    code = "DocumentNotFound"


class StaleStateError(WorkflowError):
    """The caller's expected status is outdated; it may re-read and retry."""

    code = "StaleState"

    def __init__(self, message: str = "", current_status: str | None = None) -> None:
        super().__init__(message)
        self.current_status = current_status


class PersistenceError(WorkflowError):
    code = "PersistenceError"


class AuditAppendError(PersistenceError):
    pass

