"""Exception types raised by the EduSense risk pipeline."""


class EduSenseError(Exception):
    """Base class for pipeline errors."""


class ParseError(EduSenseError):
    """The uploaded file could not be opened or decoded at all."""


class RowValidationError(EduSenseError):
    """A single imported row does not have the required shape."""

    def __init__(self, row: int, reason: str):
        self.row = row
        self.reason = reason
        super().__init__(f"Row {row}: {reason}")


class UpsertError(EduSenseError):
    """A single record could not be written to the store."""

    def __init__(self, index: int, student_id: str, cause: Exception):
        self.index = index
        self.student_id = student_id
        self.cause = cause
        super().__init__(f"Record {index} ({student_id}): {cause}")


class DeliveryError(EduSenseError):
    """The mail sender reported a failure for a notification."""

    def __init__(self, notification_id: str, reason: str = "mail sender reported failure"):
        self.notification_id = notification_id
        self.reason = reason
        super().__init__(f"Notification {notification_id}: {reason}")


class NotFoundError(EduSenseError):
    """A referenced student or notification does not exist."""
