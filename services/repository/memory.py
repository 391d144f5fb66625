"""In-process repository implementations.

Used for local development (``APP_DATABASE_URL=memory://``) and tests. A
single lock guards every read-modify-write so the conditional update behaves
like a row-level compare-and-swap.
"""

import threading
from collections.abc import Collection, Mapping
from datetime import datetime
from typing import Any

from services.invoices.schema import ContractorProfile, ContractorRate, InvoiceStatus, Submission
from services.repository.base import check_invoice_fields


class InMemoryStore:
    """Shared tables for the in-memory repositories."""

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.submissions: dict[str, Submission] = {}
        self.profiles: dict[str, ContractorProfile] = {}
        self.rates: dict[str, ContractorRate] = {}

    def add_submission(self, submission: Submission) -> None:
        with self.lock:
            self.submissions[submission.id] = submission

    def add_profile(self, profile: ContractorProfile) -> None:
        with self.lock:
            self.profiles[profile.contractor_id] = profile

    def add_rate(self, rate: ContractorRate) -> None:
        with self.lock:
            self.rates[rate.contractor_id] = rate


class InMemorySubmissionRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    def get(self, submission_id: str) -> Submission | None:
        with self.store.lock:
            submission = self.store.submissions.get(submission_id)
            return submission.model_copy() if submission else None

    def update(
        self,
        submission_id: str,
        fields: Mapping[str, Any],
        expected_statuses: Collection[InvoiceStatus] | None = None,
        stale_before: datetime | None = None,
    ) -> bool:
        check_invoice_fields(fields)
        with self.store.lock:
            current = self.store.submissions.get(submission_id)
            if current is None:
                return False
            if expected_statuses is not None and not _matches(
                current, expected_statuses, stale_before
            ):
                return False
            self.store.submissions[submission_id] = current.model_copy(update=dict(fields))
            return True

    def count_by_number_prefix(self, prefix: str) -> int:
        with self.store.lock:
            return sum(
                1
                for submission in self.store.submissions.values()
                if submission.invoice_number and submission.invoice_number.startswith(prefix)
            )

    def latest_number_by_prefix(self, prefix: str) -> str | None:
        with self.store.lock:
            numbers = [
                submission.invoice_number
                for submission in self.store.submissions.values()
                if submission.invoice_number
                and submission.invoice_number.startswith(prefix)
                and not submission.invoice_number.startswith(f"{prefix}T")
            ]
        return max(numbers, key=lambda number: (len(number), number), default=None)

    def reserve_invoice_number(self, submission_id: str, invoice_number: str) -> bool:
        with self.store.lock:
            current = self.store.submissions.get(submission_id)
            if current is None:
                return False
            taken = any(
                other.invoice_number == invoice_number
                for other in self.store.submissions.values()
                if other.id != submission_id
            )
            if taken:
                return False
            self.store.submissions[submission_id] = current.model_copy(
                update={"invoice_number": invoice_number}
            )
            return True

    def list_claimable(self, limit: int, stale_before: datetime) -> list[str]:
        with self.store.lock:
            ids = [
                submission.id
                for submission in self.store.submissions.values()
                if _matches(submission, {InvoiceStatus.PENDING}, stale_before)
            ]
        return ids[:limit]

    def ping(self) -> bool:
        return True


class InMemoryProfileRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    def get(self, contractor_id: str) -> ContractorProfile | None:
        with self.store.lock:
            return self.store.profiles.get(contractor_id)


class InMemoryRateRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    def get_active(self, contractor_id: str) -> ContractorRate | None:
        with self.store.lock:
            return self.store.rates.get(contractor_id)


def _matches(
    submission: Submission,
    expected_statuses: Collection[InvoiceStatus],
    stale_before: datetime | None,
) -> bool:
    if submission.invoice_status in expected_statuses:
        return True
    return (
        stale_before is not None
        and submission.invoice_status == InvoiceStatus.GENERATING
        and (
            submission.invoice_claimed_at is None
            or submission.invoice_claimed_at < stale_before
        )
    )
