"""Invoice data models.

Submission and profile records mirror the rows owned by the timesheet
system; InvoiceDocument is the immutable value handed to the renderer.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from services.rendering.formatting import mask_account_number


class InvoiceStatus(StrEnum):
    """Per-submission generation state, also used as the build claim."""

    PENDING = "PENDING"
    GENERATING = "GENERATING"
    GENERATED = "GENERATED"
    FAILED = "FAILED"


class Submission(BaseModel):
    """Billable-hours submission with its invoice-tracking fields."""

    id: str
    contractor_id: str
    period_start: date | None = None
    period_end: date | None = None
    project_name: str | None = None
    description: str | None = None
    overtime_description: str | None = None

    regular_hours: Decimal = Decimal("0")
    overtime_hours: Decimal = Decimal("0")

    # Rate snapshot captured at submission time (absent on legacy rows)
    regular_rate: Decimal | None = None
    overtime_rate: Decimal | None = None
    total_amount: Decimal | None = None

    invoice_due_days: int | None = None
    invoice_currency: str | None = None

    invoice_status: InvoiceStatus = InvoiceStatus.PENDING
    invoice_number: str | None = None
    invoice_issued_on: date | None = None
    invoice_path: str | None = None
    invoice_generated_at: datetime | None = None
    invoice_error: str | None = None
    invoice_claimed_at: datetime | None = None

    @property
    def work_period(self) -> str | None:
        """Billing month as YYYY-MM, taken from the period start."""
        if self.period_start is None:
            return None
        return self.period_start.strftime("%Y-%m")


class ContractorProfile(BaseModel):
    """Contractor identity, address and optional banking details."""

    contractor_id: str
    full_name: str | None = None
    email: str | None = None

    address_line1: str | None = None
    address_line2: str | None = None
    city: str | None = None
    state_parish: str | None = None
    postal_code: str | None = None
    country: str | None = None

    bank_account_name: str | None = None
    bank_name: str | None = None
    bank_address: str | None = None
    swift_code: str | None = None
    bank_routing_number: str | None = None
    bank_account_number: str | None = None
    account_type: str | None = None
    intermediary_bank: str | None = None

    def address_parts(self) -> list[str]:
        parts = [
            self.address_line1,
            self.address_line2,
            self.city,
            self.state_parish,
            self.postal_code,
            self.country,
        ]
        return [part.strip() for part in parts if part and part.strip()]


class ContractorRate(BaseModel):
    """Current contractor rate record (legacy fallback only)."""

    contractor_id: str
    hourly_rate: Decimal | None = None
    overtime_rate: Decimal | None = None


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class Party(_Frozen):
    """Name/address/email block for either side of the invoice."""

    name: str
    address: str
    email: str = ""


class LineItem(_Frozen):
    """One billed hour category. Print order is list order."""

    description: str
    quantity: Decimal
    unit_rate: Decimal
    amount: Decimal


class BankingDetails(_Frozen):
    """Payment instructions printed at the bottom of the invoice."""

    payable_to: str
    bank_name: str | None = None
    bank_address: str | None = None
    swift_code: str | None = None
    routing_number: str | None = None
    account_number: str | None = None
    account_type: str | None = None
    intermediary_bank: str | None = None

    @property
    def masked_account_number(self) -> str | None:
        if self.account_number is None:
            return None
        return mask_account_number(self.account_number)


class ProjectContext(_Frozen):
    """Project line shown between the parties and the line items."""

    project_name: str
    submission_id: str
    work_period: str | None = None


class InvoiceDocument(_Frozen):
    """Immutable invoice value built once per generation attempt."""

    invoice_number: str
    issue_date: date
    due_days: int = Field(ge=0)
    currency: str

    payee: Party
    payer: Party
    project: ProjectContext

    line_items: tuple[LineItem, ...]
    total: Decimal

    banking: BankingDetails | None = None
    description: str
    overtime_description: str | None = None

    @property
    def due_date(self) -> date:
        return self.issue_date + timedelta(days=self.due_days)


class InvoiceLink(BaseModel):
    """Result handed back to callers of the orchestrator.

    Attributes:
        url: Presigned download URL
        expires_in: Seconds until the URL expires
        invoice_number: Number printed on the invoice
        storage_path: Object key of the stored PDF
        generated_at: When the stored artifact was produced
        cached: True when no build ran for this request
    """

    url: str
    expires_in: int
    invoice_number: str
    storage_path: str
    generated_at: datetime | None = None
    cached: bool = False
