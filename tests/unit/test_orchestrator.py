"""Unit tests for GenerationOrchestrator.

Runs the real allocator, assembler and renderer over the in-memory
repositories, with a fake MinIO client behind the ArtifactStore.
"""

import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, date, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from minio.error import S3Error

from services.invoices.errors import (
    AccessDenied,
    BuildInProgress,
    GenerationFailed,
    GenerationTimeout,
    NotFound,
    NumberingFailure,
    RenderFailure,
    StorageFailure,
    StorageUnavailable,
)
from services.invoices.orchestrator import GenerationOrchestrator
from services.invoices.schema import InvoiceStatus, Submission
from services.repository.memory import InMemoryStore

FIXED_NOW = datetime(2026, 10, 19, 15, 5, tzinfo=UTC)
OBJECT_KEY = ("test-invoices", "user-1/sub-001/invoice-INV-202610-000001.pdf")


def _slow_render(orchestrator: GenerationOrchestrator, delay: float) -> Callable[..., bytes]:
    render = orchestrator.renderer.render

    def slow(*args: Any, **kwargs: Any) -> bytes:
        time.sleep(delay)
        return render(*args, **kwargs)

    return slow


def _failing_generated_write(orchestrator: GenerationOrchestrator) -> Callable[..., bool]:
    update = orchestrator.submissions.update

    def failing_update(submission_id: str, fields: dict[str, Any], **kwargs: Any) -> bool:
        if fields.get("invoice_status") == InvoiceStatus.GENERATED:
            raise ConnectionError("database went away")
        return update(submission_id, fields, **kwargs)

    return failing_update


class TestGetOrCreate:
    """Test generate-if-missing retrieval."""

    def test_first_request_generates(
        self, orchestrator: GenerationOrchestrator, seeded_store: InMemoryStore, fake_minio: Any
    ) -> None:
        link = orchestrator.get_or_create("sub-001", caller_id="user-1")

        assert link.invoice_number == "INV-202610-000001"
        assert link.storage_path == OBJECT_KEY[1]
        assert link.expires_in == 300
        assert "X-Amz-Expires=300" in link.url
        assert link.generated_at == FIXED_NOW
        assert link.cached is False
        assert fake_minio.objects[OBJECT_KEY].startswith(b"%PDF")

        stored = seeded_store.submissions["sub-001"]
        assert stored.invoice_status == InvoiceStatus.GENERATED
        assert stored.invoice_path == OBJECT_KEY[1]
        assert stored.invoice_issued_on == date(2026, 10, 19)
        assert stored.invoice_generated_at == FIXED_NOW
        assert stored.invoice_error is None
        assert stored.invoice_claimed_at is None

    def test_second_request_is_cached(
        self, orchestrator: GenerationOrchestrator, fake_minio: Any
    ) -> None:
        """Repeated requests reuse the artifact and only sign a new URL."""
        first = orchestrator.get_or_create("sub-001")

        with patch.object(
            orchestrator.renderer, "render", wraps=orchestrator.renderer.render
        ) as render:
            second = orchestrator.get_or_create("sub-001")

        render.assert_not_called()
        assert fake_minio.put_calls == 1
        assert second.cached is True
        assert second.invoice_number == first.invoice_number
        assert second.storage_path == first.storage_path

    def test_unknown_submission(self, orchestrator: GenerationOrchestrator) -> None:
        with pytest.raises(NotFound):
            orchestrator.get_or_create("missing")

    def test_other_contractor_denied(
        self, orchestrator: GenerationOrchestrator, fake_minio: Any
    ) -> None:
        with pytest.raises(AccessDenied):
            orchestrator.get_or_create("sub-001", caller_id="user-2")

        assert fake_minio.put_calls == 0

    def test_generated_without_path_rebuilds(
        self,
        orchestrator: GenerationOrchestrator,
        seeded_store: InMemoryStore,
        submission: Submission,
    ) -> None:
        seeded_store.add_submission(
            submission.model_copy(update={"invoice_status": InvoiceStatus.GENERATED})
        )

        link = orchestrator.get_or_create("sub-001")

        assert link.cached is False
        assert seeded_store.submissions["sub-001"].invoice_path == OBJECT_KEY[1]


class TestConcurrency:
    """Test the claim protocol under concurrent requests."""

    def test_exactly_one_build(
        self, orchestrator: GenerationOrchestrator, fake_minio: Any
    ) -> None:
        """Concurrent requests trigger one build and all get the same invoice."""
        workers = 8
        orchestrator.settings = orchestrator.settings.model_copy(
            update={"invoice_claim_wait_seconds": 10.0, "invoice_claim_poll_interval_seconds": 0.01}
        )
        render_calls: list[int] = []
        slow = _slow_render(orchestrator, 0.2)

        def counted(*args: Any, **kwargs: Any) -> bytes:
            render_calls.append(1)
            return slow(*args, **kwargs)

        with patch.object(orchestrator.renderer, "render", side_effect=counted):
            with ThreadPoolExecutor(max_workers=workers) as pool:
                links = list(pool.map(orchestrator.get_or_create, ["sub-001"] * workers))

        assert len(render_calls) == 1
        assert fake_minio.put_calls == 1
        assert {link.invoice_number for link in links} == {"INV-202610-000001"}
        assert sum(not link.cached for link in links) == 1

    def test_fresh_claim_reports_in_progress(
        self,
        orchestrator: GenerationOrchestrator,
        seeded_store: InMemoryStore,
        submission: Submission,
        fake_minio: Any,
    ) -> None:
        seeded_store.add_submission(
            submission.model_copy(
                update={
                    "invoice_status": InvoiceStatus.GENERATING,
                    "invoice_claimed_at": FIXED_NOW - timedelta(seconds=10),
                }
            )
        )

        with pytest.raises(BuildInProgress) as exc_info:
            orchestrator.get_or_create("sub-001")

        assert exc_info.value.submission_id == "sub-001"
        assert fake_minio.put_calls == 0

    def test_stale_claim_is_reclaimed(
        self,
        orchestrator: GenerationOrchestrator,
        seeded_store: InMemoryStore,
        submission: Submission,
    ) -> None:
        """A claim abandoned by a crashed run is taken over."""
        seeded_store.add_submission(
            submission.model_copy(
                update={
                    "invoice_status": InvoiceStatus.GENERATING,
                    "invoice_claimed_at": FIXED_NOW - timedelta(hours=1),
                }
            )
        )

        link = orchestrator.get_or_create("sub-001")

        assert link.cached is False
        assert seeded_store.submissions["sub-001"].invoice_status == InvoiceStatus.GENERATED

    def test_waiter_sees_winner_result(
        self,
        orchestrator: GenerationOrchestrator,
        seeded_store: InMemoryStore,
        submission: Submission,
        fake_minio: Any,
    ) -> None:
        """A request that lost the claim returns the winner's artifact."""
        seeded_store.add_submission(
            submission.model_copy(
                update={"invoice_status": InvoiceStatus.GENERATING, "invoice_claimed_at": FIXED_NOW}
            )
        )
        orchestrator.settings = orchestrator.settings.model_copy(
            update={"invoice_claim_wait_seconds": 5.0}
        )

        def winner_finishes(_: float) -> None:
            seeded_store.submissions["sub-001"] = seeded_store.submissions["sub-001"].model_copy(
                update={
                    "invoice_status": InvoiceStatus.GENERATED,
                    "invoice_number": "INV-202610-000009",
                    "invoice_path": "user-1/sub-001/invoice-INV-202610-000009.pdf",
                }
            )

        orchestrator.sleep = winner_finishes

        link = orchestrator.get_or_create("sub-001")

        assert link.invoice_number == "INV-202610-000009"
        assert link.cached is True
        assert fake_minio.put_calls == 0

    def test_waiter_sees_winner_failure(
        self,
        orchestrator: GenerationOrchestrator,
        seeded_store: InMemoryStore,
        submission: Submission,
    ) -> None:
        seeded_store.add_submission(
            submission.model_copy(
                update={"invoice_status": InvoiceStatus.GENERATING, "invoice_claimed_at": FIXED_NOW}
            )
        )
        orchestrator.settings = orchestrator.settings.model_copy(
            update={"invoice_claim_wait_seconds": 5.0}
        )

        def winner_fails(_: float) -> None:
            seeded_store.submissions["sub-001"] = seeded_store.submissions["sub-001"].model_copy(
                update={"invoice_status": InvoiceStatus.FAILED, "invoice_error": "render broke"}
            )

        orchestrator.sleep = winner_fails

        with pytest.raises(GenerationFailed, match="render broke"):
            orchestrator.get_or_create("sub-001")


class TestFailures:
    """Test failure recording and recovery."""

    def test_render_failure_recorded(
        self, orchestrator: GenerationOrchestrator, seeded_store: InMemoryStore
    ) -> None:
        with patch.object(
            orchestrator.renderer, "render", side_effect=RenderFailure("font missing")
        ):
            with pytest.raises(RenderFailure):
                orchestrator.get_or_create("sub-001")

        stored = seeded_store.submissions["sub-001"]
        assert stored.invoice_status == InvoiceStatus.FAILED
        assert stored.invoice_error == "font missing"
        assert stored.invoice_claimed_at is None

    def test_failed_invoice_rebuilt_on_next_request(
        self, orchestrator: GenerationOrchestrator, seeded_store: InMemoryStore
    ) -> None:
        """FAILED is never served from cache and keeps its reserved number."""
        with patch.object(orchestrator.renderer, "render", side_effect=RenderFailure("boom")):
            with pytest.raises(RenderFailure):
                orchestrator.get_or_create("sub-001")

        link = orchestrator.get_or_create("sub-001")

        assert link.invoice_number == "INV-202610-000001"
        stored = seeded_store.submissions["sub-001"]
        assert stored.invoice_status == InvoiceStatus.GENERATED
        assert stored.invoice_error is None

    def test_upload_failure_recorded(
        self,
        orchestrator: GenerationOrchestrator,
        seeded_store: InMemoryStore,
        fake_minio: Any,
        make_s3_error: Callable[..., S3Error],
    ) -> None:
        fake_minio.put_object = MagicMock(side_effect=make_s3_error("InternalError", 500))

        with pytest.raises(StorageFailure):
            orchestrator.get_or_create("sub-001")

        stored = seeded_store.submissions["sub-001"]
        assert stored.invoice_status == InvoiceStatus.FAILED
        assert "InternalError" in stored.invoice_error

    def test_unexpected_error_wrapped(
        self, orchestrator: GenerationOrchestrator, seeded_store: InMemoryStore
    ) -> None:
        with patch.object(orchestrator.assembler, "assemble", side_effect=KeyError("rate")):
            with pytest.raises(RenderFailure, match="rate"):
                orchestrator.get_or_create("sub-001")

        assert seeded_store.submissions["sub-001"].invoice_status == InvoiceStatus.FAILED

    def test_deadline_exceeded(
        self, orchestrator: GenerationOrchestrator, seeded_store: InMemoryStore, fake_minio: Any
    ) -> None:
        orchestrator.settings = orchestrator.settings.model_copy(
            update={"invoice_generation_timeout_seconds": 0.01}
        )

        with patch.object(
            orchestrator.renderer, "render", side_effect=_slow_render(orchestrator, 0.05)
        ):
            with pytest.raises(GenerationTimeout):
                orchestrator.get_or_create("sub-001")

        assert seeded_store.submissions["sub-001"].invoice_status == InvoiceStatus.FAILED
        assert fake_minio.put_calls == 0

    def test_metadata_write_failure_still_returns_link(
        self, orchestrator: GenerationOrchestrator, seeded_store: InMemoryStore
    ) -> None:
        with patch.object(
            orchestrator.submissions, "update", side_effect=_failing_generated_write(orchestrator)
        ):
            link = orchestrator.get_or_create("sub-001")

        assert link.invoice_number == "INV-202610-000001"
        assert seeded_store.submissions["sub-001"].invoice_status == InvoiceStatus.GENERATING

    def test_uploaded_invoice_served_after_metadata_loss(
        self, orchestrator: GenerationOrchestrator, seeded_store: InMemoryStore, fake_minio: Any
    ) -> None:
        """The next request finds the uploaded PDF instead of waiting on a dead claim."""
        with patch.object(
            orchestrator.submissions, "update", side_effect=_failing_generated_write(orchestrator)
        ):
            first = orchestrator.get_or_create("sub-001")

        second = orchestrator.get_or_create("sub-001")

        assert second.cached is True
        assert second.invoice_number == first.invoice_number
        assert second.storage_path == OBJECT_KEY[1]
        assert fake_minio.put_calls == 1
        stored = seeded_store.submissions["sub-001"]
        assert stored.invoice_status == InvoiceStatus.GENERATED
        assert stored.invoice_path == OBJECT_KEY[1]
        assert stored.invoice_claimed_at is None

    def test_reserved_number_without_upload_in_progress(
        self,
        orchestrator: GenerationOrchestrator,
        seeded_store: InMemoryStore,
        submission: Submission,
    ) -> None:
        seeded_store.add_submission(
            submission.model_copy(
                update={
                    "invoice_status": InvoiceStatus.GENERATING,
                    "invoice_number": "INV-202610-000001",
                    "invoice_claimed_at": FIXED_NOW,
                }
            )
        )

        with pytest.raises(BuildInProgress):
            orchestrator.get_or_create("sub-001")

        assert seeded_store.submissions["sub-001"].invoice_status == InvoiceStatus.GENERATING

    def test_numbering_failure_recorded(
        self, orchestrator: GenerationOrchestrator, seeded_store: InMemoryStore, fake_minio: Any
    ) -> None:
        with patch.object(
            orchestrator.allocator, "allocate", side_effect=NumberingFailure("no number left")
        ):
            with pytest.raises(NumberingFailure):
                orchestrator.get_or_create("sub-001")

        stored = seeded_store.submissions["sub-001"]
        assert stored.invoice_status == InvoiceStatus.FAILED
        assert stored.invoice_error == "no number left"
        assert fake_minio.put_calls == 0


class TestRegenerate:
    """Test forced regeneration."""

    def test_regenerate_overwrites_same_key(
        self, orchestrator: GenerationOrchestrator, seeded_store: InMemoryStore, fake_minio: Any
    ) -> None:
        first = orchestrator.get_or_create("sub-001")
        first_pdf = fake_minio.objects[OBJECT_KEY]
        later = FIXED_NOW + timedelta(hours=2)
        orchestrator.clock = lambda: later

        second = orchestrator.force_regenerate("sub-001", caller_id="user-1")

        assert second.invoice_number == first.invoice_number
        assert second.storage_path == first.storage_path
        assert second.generated_at == later
        assert fake_minio.put_calls == 2
        assert list(fake_minio.objects) == [OBJECT_KEY]
        assert fake_minio.objects[OBJECT_KEY] != first_pdf
        assert seeded_store.submissions["sub-001"].invoice_generated_at == later

    def test_regenerate_keeps_issue_date(
        self, orchestrator: GenerationOrchestrator, seeded_store: InMemoryStore
    ) -> None:
        """A rebuild in a later month still prints the date the number was issued on."""
        orchestrator.get_or_create("sub-001")
        orchestrator.clock = lambda: datetime(2026, 11, 2, 9, 30, tzinfo=UTC)

        with patch.object(
            orchestrator.assembler, "assemble", wraps=orchestrator.assembler.assemble
        ) as assemble:
            link = orchestrator.force_regenerate("sub-001", caller_id="user-1")

        assert link.invoice_number == "INV-202610-000001"
        assert assemble.call_args.args[3] == date(2026, 10, 19)
        assert seeded_store.submissions["sub-001"].invoice_issued_on == date(2026, 10, 19)

    def test_regenerate_checks_ownership(self, orchestrator: GenerationOrchestrator) -> None:
        with pytest.raises(AccessDenied):
            orchestrator.force_regenerate("sub-001", caller_id="user-2")


class TestFallbackAndSweep:
    """Test streamed downloads and sweep candidates."""

    def test_signing_failure_then_fetch(
        self,
        orchestrator: GenerationOrchestrator,
        seeded_store: InMemoryStore,
        fake_minio: Any,
        make_s3_error: Callable[..., S3Error],
    ) -> None:
        fake_minio.presign_error = make_s3_error("AccessDenied", 403)

        with pytest.raises(StorageUnavailable):
            orchestrator.get_or_create("sub-001")

        assert seeded_store.submissions["sub-001"].invoice_status == InvoiceStatus.GENERATED
        data, filename = orchestrator.fetch_artifact("sub-001", caller_id="user-1")
        assert data.startswith(b"%PDF")
        assert filename == "INV-202610-000001.pdf"

    def test_fetch_before_generation(self, orchestrator: GenerationOrchestrator) -> None:
        with pytest.raises(NotFound):
            orchestrator.fetch_artifact("sub-001")

    def test_reclaim_candidates(
        self,
        orchestrator: GenerationOrchestrator,
        seeded_store: InMemoryStore,
        submission: Submission,
    ) -> None:
        seeded_store.add_submission(
            submission.model_copy(
                update={
                    "id": "sub-002",
                    "invoice_status": InvoiceStatus.GENERATING,
                    "invoice_claimed_at": FIXED_NOW - timedelta(hours=1),
                }
            )
        )
        seeded_store.add_submission(
            submission.model_copy(
                update={"id": "sub-003", "invoice_status": InvoiceStatus.FAILED}
            )
        )

        assert sorted(orchestrator.reclaim_candidates(10)) == ["sub-001", "sub-002"]
