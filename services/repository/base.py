"""Persistence interfaces consumed by the invoice pipeline.

The timesheet system owns these tables; the invoicing service only reads
submissions/profiles/rates and writes the invoice-tracking columns. The
conditional ``update`` is the claim primitive: it only touches the row when
the current status is one of ``expected_statuses`` (or the row holds a
GENERATING claim older than ``stale_before``).
"""

from collections.abc import Collection, Mapping
from datetime import datetime
from typing import Any, Protocol

from services.invoices.schema import ContractorProfile, ContractorRate, InvoiceStatus, Submission

# Columns the invoicing service is allowed to write
INVOICE_FIELDS = frozenset(
    {
        "invoice_status",
        "invoice_number",
        "invoice_issued_on",
        "invoice_path",
        "invoice_generated_at",
        "invoice_error",
        "invoice_claimed_at",
    }
)


def check_invoice_fields(fields: Mapping[str, Any]) -> None:
    """Reject writes outside the invoice-tracking columns.

    Raises:
        ValueError: If a non-invoice column is named
    """
    unknown = set(fields) - INVOICE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update non-invoice submission fields: {sorted(unknown)}")


class SubmissionRepository(Protocol):
    def get(self, submission_id: str) -> Submission | None: ...

    def update(
        self,
        submission_id: str,
        fields: Mapping[str, Any],
        expected_statuses: Collection[InvoiceStatus] | None = None,
        stale_before: datetime | None = None,
    ) -> bool:
        """Write invoice fields; True when a row was changed."""
        ...

    def count_by_number_prefix(self, prefix: str) -> int: ...

    def latest_number_by_prefix(self, prefix: str) -> str | None:
        """Highest sequential number under the prefix, ignoring timestamp fallbacks."""
        ...

    def reserve_invoice_number(self, submission_id: str, invoice_number: str) -> bool:
        """Record the number on the submission unless another row already holds it."""
        ...

    def list_claimable(self, limit: int, stale_before: datetime) -> list[str]:
        """Ids of PENDING submissions and GENERATING ones with a stale claim."""
        ...

    def ping(self) -> bool: ...


class ProfileRepository(Protocol):
    def get(self, contractor_id: str) -> ContractorProfile | None: ...


class RateRepository(Protocol):
    def get_active(self, contractor_id: str) -> ContractorRate | None: ...
