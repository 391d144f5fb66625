"""Builds InvoiceDocument values from submission and profile records.

The invoice total is always the submission's stored ``total_amount``, the
figure the contractor saw when submitting. Line items are derived from the
stored rate snapshot so they agree with that total; they are never summed to
replace it.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from services.invoices.schema import (
    BankingDetails,
    ContractorProfile,
    InvoiceDocument,
    LineItem,
    Party,
    ProjectContext,
    Submission,
)
from services.rendering.formatting import round_money
from services.repository.base import RateRepository
from services.shared.config import Settings

logger = logging.getLogger(__name__)

OVERTIME_MULTIPLIER = Decimal("1.5")
ADDRESS_PLACEHOLDER = "Address not provided"
DEFAULT_PROJECT_NAME = "General Work"
DEFAULT_DESCRIPTION = "Work completed for this period."


@dataclass(frozen=True)
class BillingConfig:
    """Billed company and invoice defaults."""

    company_name: str
    company_address: str
    company_email: str
    due_days: int
    currency: str
    default_hourly_rate: Decimal

    @classmethod
    def from_settings(cls, settings: Settings) -> "BillingConfig":
        address_lines = [
            settings.company_address_line1,
            settings.company_address_line2,
            settings.company_country,
        ]
        return cls(
            company_name=settings.company_name,
            company_address="\n".join(line for line in address_lines if line),
            company_email=settings.company_email,
            due_days=settings.invoice_due_days,
            currency=settings.invoice_currency,
            default_hourly_rate=settings.default_hourly_rate,
        )


@dataclass(frozen=True)
class Rates:
    regular: Decimal
    overtime: Decimal
    source: str


class InvoiceDataAssembler:
    """Turns mutable source records into an immutable InvoiceDocument."""

    def __init__(self, config: BillingConfig, rates: RateRepository) -> None:
        self.config = config
        self.rates = rates

    def resolve_rates(self, submission: Submission) -> Rates:
        """Stored snapshot first, then the active rate record, then the default.

        Only legacy submissions without a stored regular rate reach the
        fallbacks.
        """
        if submission.regular_rate is not None:
            regular = submission.regular_rate
            overtime = submission.overtime_rate or regular * OVERTIME_MULTIPLIER
            return Rates(regular=regular, overtime=overtime, source="submission")

        record = self.rates.get_active(submission.contractor_id)
        if record is not None and record.hourly_rate:
            regular = record.hourly_rate
            overtime = record.overtime_rate or regular * OVERTIME_MULTIPLIER
            logger.info(
                f"Submission {submission.id} has no stored rates; "
                f"using active rate record ({regular}/{overtime})"
            )
            return Rates(regular=regular, overtime=overtime, source="rate_record")

        regular = self.config.default_hourly_rate
        logger.warning(
            f"Submission {submission.id} has no stored or active rate; "
            f"using default hourly rate {regular}"
        )
        return Rates(regular=regular, overtime=regular * OVERTIME_MULTIPLIER, source="default")

    def build_line_items(self, submission: Submission, rates: Rates) -> list[LineItem]:
        project_name = submission.project_name or DEFAULT_PROJECT_NAME
        items: list[LineItem] = []

        if submission.regular_hours > 0:
            items.append(
                LineItem(
                    description=f"{project_name} - Regular Hours",
                    quantity=submission.regular_hours,
                    unit_rate=rates.regular,
                    amount=round_money(submission.regular_hours * rates.regular),
                )
            )

        if submission.overtime_hours > 0:
            if submission.overtime_description:
                description = f"{project_name} - Overtime ({submission.overtime_description})"
            else:
                description = f"{project_name} - Overtime Hours"
            items.append(
                LineItem(
                    description=description,
                    quantity=submission.overtime_hours,
                    unit_rate=rates.overtime,
                    amount=round_money(submission.overtime_hours * rates.overtime),
                )
            )

        return items

    def build_payee(self, profile: ContractorProfile | None) -> Party:
        parts = profile.address_parts() if profile else []
        return Party(
            name=(profile.full_name if profile else None) or "Contractor",
            address="\n".join(parts) or ADDRESS_PLACEHOLDER,
            email=(profile.email if profile else None) or "",
        )

    def build_banking(self, profile: ContractorProfile | None) -> BankingDetails | None:
        if profile is None or not (profile.bank_name or profile.bank_account_number):
            return None
        return BankingDetails(
            payable_to=profile.bank_account_name or profile.full_name or "Contractor",
            bank_name=profile.bank_name,
            bank_address=profile.bank_address,
            swift_code=profile.swift_code,
            routing_number=profile.bank_routing_number,
            account_number=profile.bank_account_number,
            account_type=profile.account_type,
            intermediary_bank=profile.intermediary_bank,
        )

    def assemble(
        self,
        submission: Submission,
        profile: ContractorProfile | None,
        invoice_number: str,
        issue_date: date,
    ) -> InvoiceDocument:
        """Build the invoice for one generation attempt.

        Args:
            submission: Source submission (stored rates and total)
            profile: Contractor profile, None when the contractor has none
            invoice_number: Number reserved for this submission
            issue_date: Invoice date

        Returns:
            Immutable InvoiceDocument
        """
        rates = self.resolve_rates(submission)
        line_items = self.build_line_items(submission, rates)

        if submission.total_amount is not None:
            total = submission.total_amount
        else:
            total = sum((item.amount for item in line_items), Decimal("0"))
            logger.warning(
                f"Submission {submission.id} has no stored total; using line item sum {total}"
            )

        return InvoiceDocument(
            invoice_number=invoice_number,
            issue_date=issue_date,
            due_days=(
                submission.invoice_due_days
                if submission.invoice_due_days is not None
                else self.config.due_days
            ),
            currency=submission.invoice_currency or self.config.currency,
            payee=self.build_payee(profile),
            payer=Party(
                name=self.config.company_name,
                address=self.config.company_address,
                email=self.config.company_email,
            ),
            project=ProjectContext(
                project_name=submission.project_name or DEFAULT_PROJECT_NAME,
                submission_id=submission.id,
                work_period=submission.work_period,
            ),
            line_items=tuple(line_items),
            total=total,
            banking=self.build_banking(profile),
            description=submission.description or DEFAULT_DESCRIPTION,
            overtime_description=submission.overtime_description,
        )
