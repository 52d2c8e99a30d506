"""Exception taxonomy for queue processing."""


class QueueError(Exception):
    """Infrastructure failure in the queue itself."""


class StorageError(QueueError):
    """The queue store could not be read or written."""


class ItemNotFoundError(QueueError):
    """No queue item exists with the given id."""

    def __init__(self, item_id: str):
        super().__init__(f"Queue item {item_id} not found")
        self.item_id = item_id


class ConfigurationError(Exception):
    """Collaborators or settings are missing or invalid."""


class ItemError(Exception):
    """Failure while processing a single queue item."""

    retryable = True


class TransientError(ItemError):
    """Network errors, provider 5xx responses and the like."""


class ItemTimeoutError(TransientError):
    def __init__(self, operation: str, timeout: float):
        super().__init__(f"{operation} timed out after {timeout:.2f}s")
        self.operation = operation
        self.timeout = timeout


class ItemCancelledError(TransientError):
    def __init__(self, message: str = "Processing aborted"):
        super().__init__(message)


class NonRetryableError(ItemError):
    """The item can never succeed as-is; it goes straight to failed."""

    retryable = False


class SubjectNotFoundError(NonRetryableError):
    def __init__(self, subject_id: str):
        super().__init__(f"Contact {subject_id} not found in CRM")
        self.subject_id = subject_id


class MalformedItemError(NonRetryableError):
    pass


class SubmissionMismatchError(ItemError):
    """The CRM rejected some output fields (unknown property, schema drift).

    The validation work succeeded, so the item completes with a warning.
    """


def is_retryable(exc: BaseException) -> bool:
    """Classify a pipeline failure. Unknown exceptions count as transient."""
    if isinstance(exc, ItemError):
        return exc.retryable
    return True
