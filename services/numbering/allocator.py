"""Sequential invoice number allocation.

Format: ``{prefix}-{scope}-{sequence}``, e.g. ``INV-202610-000042`` for the
month scope or ``INV-2026-0042`` for the year scope with width 4. The scope
and width are deployment-wide settings.

Algorithm
---------
1. Take the larger of the count of numbers issued under ``{prefix}-{scope}-``
   and the trailing sequence of the highest one (legacy gaps push it up).
2. Attempt ``k`` proposes ``base + 1 + k`` and tries to reserve it on the
   submission row. The reservation is atomic in the repository (unique
   index / locked check), so two concurrent allocators can never both win
   the same candidate; the loser moves on to the next one.
3. When every attempt collides, a timestamp-derived number is reserved
   instead. It is unique but not visually sequential.
"""

import logging
import re
import secrets
import time
from datetime import date

from services.api import metrics
from services.invoices.errors import NumberingFailure
from services.repository.base import SubmissionRepository
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class SequenceAllocator:
    """Issues unique, period-scoped invoice numbers."""

    def __init__(self, settings: Settings, submissions: SubmissionRepository) -> None:
        self.prefix = settings.invoice_number_prefix
        self.scope = settings.invoice_number_scope
        self.width = settings.invoice_number_width
        self.max_retries = settings.invoice_number_max_retries
        self.submissions = submissions

        scope_digits = 6 if self.scope == "month" else 4
        self._pattern = re.compile(
            rf"^{re.escape(self.prefix)}-(\d{{{scope_digits}}})-"
            rf"(?:(?P<seq>\d{{{self.width},}})|T\d+[0-9A-F]{{4}})$"
        )

    def scope_key(self, issued_on: date) -> str:
        if self.scope == "month":
            return f"{issued_on.year:04d}{issued_on.month:02d}"
        return f"{issued_on.year:04d}"

    def scope_prefix(self, issued_on: date) -> str:
        return f"{self.prefix}-{self.scope_key(issued_on)}-"

    def format_number(self, issued_on: date, sequence: int) -> str:
        return f"{self.scope_prefix(issued_on)}{sequence:0{self.width}d}"

    def allocate(self, submission_id: str, issued_on: date) -> str:
        """Reserve the next free number for a submission.

        Args:
            submission_id: Submission that will carry the number
            issued_on: Issue date; selects the numbering scope

        Returns:
            The reserved invoice number

        Raises:
            NumberingFailure: If not even the fallback number could be reserved
        """
        prefix = self.scope_prefix(issued_on)
        base = self.submissions.count_by_number_prefix(prefix)
        latest = self.submissions.latest_number_by_prefix(prefix)
        if latest is not None:
            base = max(base, self.parse_sequence(latest) or 0)

        for attempt in range(self.max_retries):
            candidate = self.format_number(issued_on, base + 1 + attempt)
            if self.submissions.reserve_invoice_number(submission_id, candidate):
                logger.info(f"Allocated invoice number {candidate} for submission {submission_id}")
                return candidate
            metrics.invoice_number_collisions_total.inc()
            logger.debug(f"Invoice number {candidate} taken (attempt {attempt + 1})")

        fallback = self._fallback_number(issued_on)
        metrics.invoice_number_fallbacks_total.inc()
        logger.warning(
            f"Sequential allocation exhausted {self.max_retries} attempts for submission "
            f"{submission_id}; using fallback number {fallback}"
        )
        if not self.submissions.reserve_invoice_number(submission_id, fallback):
            raise NumberingFailure(f"Could not reserve an invoice number for {submission_id}")
        return fallback

    def _fallback_number(self, issued_on: date) -> str:
        millis = int(time.time() * 1000)
        return f"{self.scope_prefix(issued_on)}T{millis}{secrets.token_hex(2).upper()}"

    def parse_sequence(self, invoice_number: str) -> int | None:
        """Sequence part of a number in the configured format (None for fallbacks)."""
        match = self._pattern.match(invoice_number)
        if match is None or match.group("seq") is None:
            return None
        return int(match.group("seq"))
