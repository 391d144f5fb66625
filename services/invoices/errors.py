"""Error taxonomy for invoice generation and retrieval."""


class InvoiceError(Exception):
    """Base class for invoice pipeline errors."""


class NotFound(InvoiceError):
    """Submission or stored artifact does not exist."""


class AccessDenied(InvoiceError):
    """Caller does not own the submission."""


class BuildInProgress(InvoiceError):
    """Another run holds the generation claim for this submission."""

    def __init__(self, submission_id: str) -> None:
        super().__init__(f"Invoice generation already in progress for submission {submission_id}")
        self.submission_id = submission_id


class RenderFailure(InvoiceError):
    """Invoice data could not be assembled or rendered."""


class GenerationTimeout(RenderFailure):
    """A generation run exceeded its deadline."""


class StorageFailure(InvoiceError):
    """Upload, signing or download against object storage failed."""


class StorageUnavailable(StorageFailure):
    """Presigned URL could not be issued."""


class PersistenceFailure(InvoiceError):
    """Submission metadata could not be written."""


class GenerationFailed(InvoiceError):
    """The run this request waited on ended in FAILED."""


class NumberingFailure(PersistenceFailure):
    """No invoice number could be reserved for the submission."""
