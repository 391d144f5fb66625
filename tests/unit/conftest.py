"""Shared fixtures for invoice pipeline tests."""

from collections.abc import Callable
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

import pytest
from minio.error import S3Error

from services.invoices.assembler import BillingConfig, InvoiceDataAssembler
from services.invoices.orchestrator import GenerationOrchestrator
from services.invoices.schema import ContractorProfile, Submission
from services.numbering.allocator import SequenceAllocator
from services.rendering.renderer import DocumentRenderer
from services.repository.factory import Repositories, in_memory_repositories
from services.repository.memory import InMemoryStore
from services.shared.config import Settings
from services.storage.service import ArtifactStore

FIXED_NOW = datetime(2026, 10, 19, 15, 5, tzinfo=UTC)


def _s3_error(code: str, status: int = 404) -> S3Error:
    return S3Error(
        code=code,
        message=f"{code} error",
        resource="/test-invoices/object",
        request_id="12345",
        host_id="host",
        response=MagicMock(status=status, data=b""),
    )


class FakeMinio:
    """In-memory stand-in for the MinIO client calls the store makes."""

    def __init__(self) -> None:
        self.buckets: set[str] = set()
        self.objects: dict[tuple[str, str], bytes] = {}
        self.put_calls = 0
        self.presign_error: S3Error | None = None

    def bucket_exists(self, bucket_name: str) -> bool:
        return bucket_name in self.buckets

    def make_bucket(self, bucket_name: str) -> None:
        self.buckets.add(bucket_name)

    def list_buckets(self) -> list[Any]:
        return [MagicMock(name=bucket) for bucket in self.buckets]

    def put_object(
        self, bucket_name: str, object_name: str, data: Any, length: int, content_type: str
    ) -> MagicMock:
        self.put_calls += 1
        self.objects[(bucket_name, object_name)] = data.read(length)
        return MagicMock(etag=f"etag-{self.put_calls}")

    def presigned_get_object(self, bucket_name: str, object_name: str, expires: Any) -> str:
        if self.presign_error is not None:
            raise self.presign_error
        seconds = int(expires.total_seconds())
        return f"https://minio.test/{bucket_name}/{object_name}?X-Amz-Expires={seconds}"

    def get_object(self, bucket_name: str, object_name: str) -> MagicMock:
        if (bucket_name, object_name) not in self.objects:
            raise _s3_error("NoSuchKey")
        response = MagicMock()
        response.read.return_value = self.objects[(bucket_name, object_name)]
        return response

    def stat_object(self, bucket_name: str, object_name: str) -> MagicMock:
        if (bucket_name, object_name) not in self.objects:
            raise _s3_error("NoSuchKey")
        return MagicMock()


@pytest.fixture
def settings() -> Settings:
    """Settings with fast claim timings and an in-memory database."""
    return Settings(
        _env_file=None,
        database_url="memory://",
        storage_access_key="test-access-key",
        storage_secret_key="test-secret-key",
        storage_bucket="test-invoices",
        storage_retry_attempts=1,
        invoice_claim_wait_seconds=0,
        invoice_claim_poll_interval_seconds=0.01,
    )


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def repositories(memory_store: InMemoryStore) -> Repositories:
    return in_memory_repositories(memory_store)


@pytest.fixture
def fake_minio() -> FakeMinio:
    return FakeMinio()


@pytest.fixture
def artifact_store(settings: Settings, fake_minio: FakeMinio) -> ArtifactStore:
    return ArtifactStore(settings, client=fake_minio)  # type: ignore[arg-type]


@pytest.fixture
def submission() -> Submission:
    """Approved submission: 40 regular hours at $20 plus 10 overtime at $30."""
    return Submission(
        id="sub-001",
        contractor_id="user-1",
        period_start=date(2026, 10, 1),
        period_end=date(2026, 10, 31),
        project_name="Website Redesign",
        description="Built the landing page and checkout flow.",
        overtime_description="Launch weekend support",
        regular_hours=Decimal("40"),
        overtime_hours=Decimal("10"),
        regular_rate=Decimal("20"),
        overtime_rate=Decimal("30"),
        total_amount=Decimal("1100.00"),
    )


@pytest.fixture
def profile() -> ContractorProfile:
    return ContractorProfile(
        contractor_id="user-1",
        full_name="Jordan Reyes",
        email="jordan@example.com",
        address_line1="12 Hope Road",
        city="Kingston",
        country="Jamaica",
        bank_account_name="Jordan Reyes",
        bank_name="National Commercial Bank",
        swift_code="JNCBJMKX",
        bank_account_number="1234567890123",
        account_type="Savings",
    )


@pytest.fixture
def seeded_store(
    memory_store: InMemoryStore, submission: Submission, profile: ContractorProfile
) -> InMemoryStore:
    memory_store.add_submission(submission)
    memory_store.add_profile(profile)
    return memory_store


@pytest.fixture
def orchestrator(
    settings: Settings,
    seeded_store: InMemoryStore,
    repositories: Repositories,
    artifact_store: ArtifactStore,
) -> GenerationOrchestrator:
    """Orchestrator over the seeded in-memory store with a fixed clock."""
    return GenerationOrchestrator(
        settings=settings,
        repositories=repositories,
        allocator=SequenceAllocator(settings, repositories.submissions),
        assembler=InvoiceDataAssembler(BillingConfig.from_settings(settings), repositories.rates),
        renderer=DocumentRenderer(),
        store=artifact_store,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def make_s3_error() -> Callable[..., S3Error]:
    """Factory for S3Error instances as the MinIO client raises them."""
    return _s3_error
