"""Failure kinds raised by the storage layer and the workflow services.

Every failure carries a machine-checkable ``kind`` and a short message. The
HTTP layer maps kinds to status codes in ``studybuddy.main``.
"""


class StudyBuddyError(Exception):
    kind = "StudyBuddyError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class NotFoundError(StudyBuddyError):
    kind = "NotFound"


class AlreadyProcessedError(StudyBuddyError):
    kind = "AlreadyProcessed"


class ForbiddenError(StudyBuddyError):
    kind = "Forbidden"


class ConflictError(StudyBuddyError):
    kind = "Conflict"


class ValidationError(StudyBuddyError):
    kind = "ValidationError"


class StorageError(StudyBuddyError):
    kind = "StorageError"
