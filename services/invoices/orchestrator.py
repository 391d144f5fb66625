"""Generate-if-missing orchestration for submission invoices.

The persisted ``invoice_status`` doubles as the build claim. A run moves the
row to GENERATING with a conditional update; only the caller whose update
changed the row builds. Everyone else polls the row until the winner
finishes. Claims older than ``invoice_claim_stale_seconds`` count as
abandoned and can be taken over.

Pipeline for the claim holder:
1. Reuse the submission's invoice number and issue date or allocate new ones
2. Assemble the immutable InvoiceDocument
3. Render the PDF
4. Upload to the deterministic key (overwrites any previous artifact)
5. Persist GENERATED metadata, releasing the claim
6. Issue a fresh signed URL

A waiter whose wait window closes checks storage for an artifact uploaded
under the reserved number before reporting the build as in progress.
"""

import logging
import time
from collections.abc import Callable, Collection
from datetime import UTC, date, datetime, timedelta

from tenacity import Retrying, retry_if_result, stop_after_delay, wait_fixed

from services.api import metrics
from services.invoices.assembler import InvoiceDataAssembler
from services.invoices.errors import (
    AccessDenied,
    BuildInProgress,
    GenerationFailed,
    GenerationTimeout,
    InvoiceError,
    NotFound,
    PersistenceFailure,
    RenderFailure,
)
from services.invoices.schema import InvoiceLink, InvoiceStatus, Submission
from services.numbering.allocator import SequenceAllocator
from services.rendering.renderer import DocumentRenderer
from services.repository.factory import Repositories
from services.shared.config import Settings
from services.storage.service import ArtifactStore

logger = logging.getLogger(__name__)

# Stored error messages are truncated to this length
MAX_ERROR_LENGTH = 1000

CLAIMABLE_STATUSES = frozenset({InvoiceStatus.PENDING, InvoiceStatus.FAILED})
REGENERATABLE_STATUSES = frozenset(
    {InvoiceStatus.PENDING, InvoiceStatus.FAILED, InvoiceStatus.GENERATED}
)


def utc_now() -> datetime:
    return datetime.now(UTC)


def _still_generating(submission: Submission | None) -> bool:
    return submission is not None and submission.invoice_status == InvoiceStatus.GENERATING


class GenerationOrchestrator:
    """Idempotent invoice generation and link issuance per submission."""

    def __init__(
        self,
        settings: Settings,
        repositories: Repositories,
        allocator: SequenceAllocator,
        assembler: InvoiceDataAssembler,
        renderer: DocumentRenderer,
        store: ArtifactStore,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize orchestrator.

        Args:
            settings: Application settings (claim and link timings)
            repositories: Submission, profile and rate repositories
            allocator: Invoice number allocator
            assembler: Builds InvoiceDocument values
            renderer: Renders documents to PDF bytes
            store: Artifact storage and link issuance
            clock: Source of the current UTC time
            sleep: Used between status polls while another run builds
        """
        self.settings = settings
        self.submissions = repositories.submissions
        self.profiles = repositories.profiles
        self.allocator = allocator
        self.assembler = assembler
        self.renderer = renderer
        self.store = store
        self.clock = clock
        self.sleep = sleep

    @property
    def stale_after(self) -> timedelta:
        return timedelta(seconds=self.settings.invoice_claim_stale_seconds)

    def get_or_create(self, submission_id: str, caller_id: str | None = None) -> InvoiceLink:
        """Return a link to the submission's invoice, building it if missing.

        Args:
            submission_id: Submission to invoice
            caller_id: Requesting contractor; ownership is checked when given

        Returns:
            InvoiceLink with a freshly signed URL

        Raises:
            NotFound: Unknown submission
            AccessDenied: Caller does not own the submission
            BuildInProgress: Another run is still building after the wait window
            GenerationFailed: The run this request waited on failed
            RenderFailure: Assembly or rendering failed (recorded as FAILED)
            NumberingFailure: No invoice number could be reserved (recorded as FAILED)
            StorageFailure: Upload failed (recorded as FAILED)
            StorageUnavailable: Artifact exists but no URL could be signed
        """
        submission = self._load(submission_id, caller_id)

        if submission.invoice_status == InvoiceStatus.GENERATED and submission.invoice_path:
            metrics.invoice_cache_hits_total.inc()
            logger.debug(f"Invoice for submission {submission_id} already generated")
            return self._link(submission, cached=True)

        expected = set(CLAIMABLE_STATUSES)
        if submission.invoice_status == InvoiceStatus.GENERATED:
            # Marked generated without a stored artifact; rebuild it
            logger.warning(f"Submission {submission_id} is GENERATED but has no invoice path")
            expected.add(InvoiceStatus.GENERATED)

        return self._claim_and_build(submission_id, expected)

    def force_regenerate(self, submission_id: str, caller_id: str | None = None) -> InvoiceLink:
        """Rebuild the invoice even when one already exists.

        The existing invoice number is kept, so the new PDF replaces the old
        one under the same storage key.

        Raises:
            Same as get_or_create
        """
        self._load(submission_id, caller_id)
        logger.info(f"Regenerating invoice for submission {submission_id}")
        return self._claim_and_build(submission_id, REGENERATABLE_STATUSES)

    def fetch_artifact(self, submission_id: str, caller_id: str | None = None) -> tuple[bytes, str]:
        """Read the stored PDF for direct streaming.

        Used when a signed URL cannot be issued.

        Returns:
            Tuple of (PDF bytes, download filename)

        Raises:
            NotFound: Unknown submission, no generated invoice, or missing object
            AccessDenied: Caller does not own the submission
            StorageFailure: The object could not be read
        """
        submission = self._load(submission_id, caller_id)
        if submission.invoice_status != InvoiceStatus.GENERATED or not submission.invoice_path:
            raise NotFound(f"Invoice for submission {submission_id} has not been generated")

        data = self.store.download(submission.invoice_path)
        metrics.invoice_download_fallbacks_total.inc()
        return data, f"{submission.invoice_number or submission_id}.pdf"

    def reclaim_candidates(self, limit: int) -> list[str]:
        """Ids of submissions with no invoice yet or an abandoned claim."""
        stale_before = self.clock() - self.stale_after
        return self.submissions.list_claimable(limit, stale_before)

    def _load(self, submission_id: str, caller_id: str | None) -> Submission:
        submission = self.submissions.get(submission_id)
        if submission is None:
            raise NotFound(f"Submission {submission_id} not found")
        if caller_id is not None and submission.contractor_id != caller_id:
            logger.warning(f"User {caller_id} denied access to submission {submission_id}")
            raise AccessDenied(f"Submission {submission_id} belongs to another contractor")
        return submission

    def _claim_and_build(
        self, submission_id: str, expected: Collection[InvoiceStatus]
    ) -> InvoiceLink:
        claimed_at = self.clock()
        claimed = self.submissions.update(
            submission_id,
            {
                "invoice_status": InvoiceStatus.GENERATING,
                "invoice_claimed_at": claimed_at,
                "invoice_error": None,
            },
            expected_statuses=expected,
            stale_before=claimed_at - self.stale_after,
        )
        if not claimed:
            metrics.invoice_claim_contention_total.inc()
            logger.info(f"Lost generation claim for submission {submission_id}; waiting")
            return self._await_other_build(submission_id)

        logger.info(f"Claimed invoice generation for submission {submission_id}")
        return self._build(submission_id, claimed_at)

    def _await_other_build(self, submission_id: str) -> InvoiceLink:
        """Poll until the claim holder finishes or the wait window closes."""
        retrying = Retrying(
            retry=retry_if_result(_still_generating),
            stop=stop_after_delay(self.settings.invoice_claim_wait_seconds),
            wait=wait_fixed(self.settings.invoice_claim_poll_interval_seconds),
            sleep=self.sleep,
            retry_error_callback=lambda state: state.outcome.result(),
        )
        submission = retrying(self.submissions.get, submission_id)

        if submission is None:
            raise NotFound(f"Submission {submission_id} not found")
        if submission.invoice_status == InvoiceStatus.GENERATED and submission.invoice_path:
            return self._link(submission, cached=True)
        if submission.invoice_status == InvoiceStatus.FAILED:
            raise GenerationFailed(submission.invoice_error or "Invoice generation failed")

        stored = self._stored_artifact(submission)
        if stored is not None:
            return self._link(stored, cached=True)
        raise BuildInProgress(submission_id)

    def _stored_artifact(self, submission: Submission) -> Submission | None:
        """Serve an uploaded artifact the claim holder never recorded.

        A run that uploaded but failed to write GENERATED leaves the row
        claimed with a reserved number and no path. The object under the
        number's key is the invoice; metadata is repaired on a best-effort
        basis. While a regeneration is running the previous artifact is
        served unchanged.
        """
        if not submission.invoice_number:
            return None
        object_name = self.store.invoice_object_name(
            submission.contractor_id, submission.id, submission.invoice_number
        )
        if not self.store.object_exists(object_name):
            return None

        if submission.invoice_path:
            return submission
        recovered = submission.model_copy(
            update={
                "invoice_status": InvoiceStatus.GENERATED,
                "invoice_path": object_name,
                "invoice_generated_at": submission.invoice_claimed_at,
                "invoice_error": None,
            }
        )
        logger.warning(f"Recovering stored invoice {object_name} with missing metadata")
        try:
            self._persist_success(recovered)
        except PersistenceFailure as e:
            logger.error(f"Could not repair metadata for submission {submission.id}: {e}")
        return recovered

    def _build(self, submission_id: str, claimed_at: datetime) -> InvoiceLink:
        started = time.monotonic()
        deadline = started + self.settings.invoice_generation_timeout_seconds

        try:
            submission = self.submissions.get(submission_id)
            if submission is None:
                raise NotFound(f"Submission {submission_id} not found")
            profile = self.profiles.get(submission.contractor_id)

            invoice_number, issued_on = self._invoice_number(submission, claimed_at)
            self._check_deadline(deadline, "numbering")

            document = self.assembler.assemble(submission, profile, invoice_number, issued_on)
            pdf = self.renderer.render(document, generated_at=claimed_at)
            self._check_deadline(deadline, "rendering")

            object_name = self.store.invoice_object_name(
                submission.contractor_id, submission_id, invoice_number
            )
            self.store.upload_bytes(pdf, object_name, content_type="application/pdf")
        except InvoiceError as e:
            self._record_failure(submission_id, e)
            raise
        except Exception as e:
            logger.exception(f"Unexpected error generating invoice for {submission_id}")
            failure = RenderFailure(f"Invoice generation failed: {e}")
            self._record_failure(submission_id, failure)
            raise failure from e
        finally:
            metrics.invoice_generation_duration_seconds.observe(time.monotonic() - started)

        metrics.invoice_generations_total.labels(outcome="success").inc()
        logger.info(
            f"Generated invoice {invoice_number} for submission {submission_id} "
            f"({len(pdf)} bytes)"
        )

        generated = submission.model_copy(
            update={
                "invoice_status": InvoiceStatus.GENERATED,
                "invoice_number": invoice_number,
                "invoice_issued_on": issued_on,
                "invoice_path": object_name,
                "invoice_generated_at": claimed_at,
                "invoice_error": None,
            }
        )
        try:
            self._persist_success(generated)
        except PersistenceFailure as e:
            # The artifact is stored; later requests recover it from storage
            logger.error(f"Invoice for {submission_id} stored but metadata not saved: {e}")

        return self._link(generated, cached=False)

    def _invoice_number(self, submission: Submission, claimed_at: datetime) -> tuple[str, date]:
        """Number and issue date for this build.

        A regenerated invoice keeps the number and the date it was first
        issued on, so the printed date stays inside the number's scope.
        """
        if submission.invoice_number:
            issued_at = submission.invoice_generated_at or claimed_at
            return submission.invoice_number, submission.invoice_issued_on or issued_at.date()

        issued_on = claimed_at.date()
        invoice_number = self.allocator.allocate(submission.id, issued_on)
        self.submissions.update(submission.id, {"invoice_issued_on": issued_on})
        return invoice_number, issued_on

    def _persist_success(self, submission: Submission) -> None:
        try:
            updated = self.submissions.update(
                submission.id,
                {
                    "invoice_status": InvoiceStatus.GENERATED,
                    "invoice_number": submission.invoice_number,
                    "invoice_issued_on": submission.invoice_issued_on,
                    "invoice_path": submission.invoice_path,
                    "invoice_generated_at": submission.invoice_generated_at,
                    "invoice_error": None,
                    "invoice_claimed_at": None,
                },
                expected_statuses={InvoiceStatus.GENERATING},
            )
        except Exception as e:
            raise PersistenceFailure(str(e)) from e
        if not updated:
            raise PersistenceFailure(f"Claim on submission {submission.id} was no longer held")

    def _record_failure(self, submission_id: str, error: Exception) -> None:
        outcome = "timeout" if isinstance(error, GenerationTimeout) else "failed"
        metrics.invoice_generations_total.labels(outcome=outcome).inc()
        message = str(error)[:MAX_ERROR_LENGTH] or type(error).__name__
        logger.error(f"Invoice generation failed for submission {submission_id}: {message}")

        try:
            self.submissions.update(
                submission_id,
                {
                    "invoice_status": InvoiceStatus.FAILED,
                    "invoice_error": message,
                    "invoice_claimed_at": None,
                },
                expected_statuses={InvoiceStatus.GENERATING},
            )
        except Exception:
            logger.exception(f"Could not record failure for submission {submission_id}")

    def _check_deadline(self, deadline: float, stage: str) -> None:
        if time.monotonic() > deadline:
            raise GenerationTimeout(
                f"Invoice generation exceeded "
                f"{self.settings.invoice_generation_timeout_seconds}s after {stage}"
            )

    def _link(self, submission: Submission, cached: bool) -> InvoiceLink:
        if not submission.invoice_path:
            raise NotFound(f"Invoice for submission {submission.id} has not been stored")
        presigned = self.store.get_presigned_url(
            submission.invoice_path,
            expires_seconds=self.settings.invoice_signed_url_ttl_seconds,
        )
        return InvoiceLink(
            url=presigned.url,
            expires_in=presigned.expires_in_seconds,
            invoice_number=submission.invoice_number or "",
            storage_path=submission.invoice_path,
            generated_at=submission.invoice_generated_at,
            cached=cached,
        )
