"""SQLAlchemy Core repositories.

The claim is a guarded UPDATE (``... WHERE id = :id AND invoice_status IN
(...)``) whose rowcount tells the caller whether it won. Invoice numbers are
protected by a unique index, so a reservation that collides fails with an
IntegrityError and the allocator moves on to the next candidate.
"""

import logging
from collections.abc import Collection, Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Engine,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    and_,
    create_engine,
    func,
    or_,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from services.invoices.schema import ContractorProfile, ContractorRate, InvoiceStatus, Submission
from services.repository.base import check_invoice_fields

logger = logging.getLogger(__name__)

metadata = MetaData()

submissions = Table(
    "submissions",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("contractor_user_id", String(64), nullable=False, index=True),
    Column("period_start", Date),
    Column("period_end", Date),
    Column("project_name", String(255)),
    Column("description", Text),
    Column("overtime_description", Text),
    Column("regular_hours", Numeric(8, 2), nullable=False, default=0),
    Column("overtime_hours", Numeric(8, 2), nullable=False, default=0),
    Column("regular_rate", Numeric(12, 2)),
    Column("overtime_rate", Numeric(12, 2)),
    Column("total_amount", Numeric(12, 2)),
    Column("invoice_due_days", Integer),
    Column("invoice_currency", String(3)),
    Column("invoice_status", String(16), nullable=False, default=InvoiceStatus.PENDING.value),
    Column("invoice_number", String(64), unique=True),
    Column("invoice_issued_on", Date),
    Column("invoice_path", String(512)),
    Column("invoice_generated_at", DateTime(timezone=True)),
    Column("invoice_error", Text),
    Column("invoice_claimed_at", DateTime(timezone=True)),
)

contractor_profiles = Table(
    "contractor_profiles",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("full_name", String(255)),
    Column("email", String(255)),
    Column("address_line1", String(255)),
    Column("address_line2", String(255)),
    Column("city", String(128)),
    Column("state_parish", String(128)),
    Column("postal_code", String(32)),
    Column("country", String(128)),
    Column("bank_account_name", String(255)),
    Column("bank_name", String(255)),
    Column("bank_address", String(512)),
    Column("swift_code", String(32)),
    Column("bank_routing_number", String(64)),
    Column("bank_account_number", String(64)),
    Column("account_type", String(32)),
    Column("intermediary_bank", String(255)),
)

contractors = Table(
    "contractors",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("contractor_id", String(64), nullable=False, index=True),
    Column("hourly_rate", Numeric(12, 2)),
    Column("overtime_rate", Numeric(12, 2)),
    Column("is_active", Boolean, nullable=False, default=True),
)


def create_db_engine(database_url: str) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, pool_pre_ping=True)


def create_tables(engine: Engine) -> None:
    """Create the tables this service reads (development and tests)."""
    metadata.create_all(engine)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands timestamps back naive; they were written as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _number_like(prefix: str) -> Any:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return submissions.c.invoice_number.like(f"{escaped}%", escape="\\")


def _claim_condition(
    expected_statuses: Collection[InvoiceStatus], stale_before: datetime | None
) -> Any:
    condition = submissions.c.invoice_status.in_([status.value for status in expected_statuses])
    if stale_before is not None:
        stale_claim = and_(
            submissions.c.invoice_status == InvoiceStatus.GENERATING.value,
            or_(
                submissions.c.invoice_claimed_at.is_(None),
                submissions.c.invoice_claimed_at < stale_before,
            ),
        )
        condition = or_(condition, stale_claim)
    return condition


class SqlSubmissionRepository:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get(self, submission_id: str) -> Submission | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(submissions).where(submissions.c.id == submission_id)
            ).mappings().first()
        if row is None:
            return None
        data = dict(row)
        data["contractor_id"] = data.pop("contractor_user_id")
        data["regular_hours"] = data["regular_hours"] or 0
        data["overtime_hours"] = data["overtime_hours"] or 0
        for key in ("invoice_generated_at", "invoice_claimed_at"):
            data[key] = _as_utc(data[key])
        return Submission(**data)

    def update(
        self,
        submission_id: str,
        fields: Mapping[str, Any],
        expected_statuses: Collection[InvoiceStatus] | None = None,
        stale_before: datetime | None = None,
    ) -> bool:
        check_invoice_fields(fields)
        values = {
            key: value.value if isinstance(value, InvoiceStatus) else value
            for key, value in fields.items()
        }
        statement = update(submissions).where(submissions.c.id == submission_id).values(**values)
        if expected_statuses is not None:
            statement = statement.where(_claim_condition(expected_statuses, stale_before))

        with self.engine.begin() as conn:
            return conn.execute(statement).rowcount == 1

    def count_by_number_prefix(self, prefix: str) -> int:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(submissions).where(_number_like(prefix))
            ).scalar_one()
        return int(count)

    def latest_number_by_prefix(self, prefix: str) -> str | None:
        number = submissions.c.invoice_number
        statement = (
            select(number)
            .where(_number_like(prefix), ~_number_like(f"{prefix}T"))
            .order_by(func.length(number).desc(), number.desc())
            .limit(1)
        )
        with self.engine.connect() as conn:
            return conn.execute(statement).scalar_one_or_none()

    def reserve_invoice_number(self, submission_id: str, invoice_number: str) -> bool:
        statement = (
            update(submissions)
            .where(submissions.c.id == submission_id)
            .values(invoice_number=invoice_number)
        )
        try:
            with self.engine.begin() as conn:
                return conn.execute(statement).rowcount == 1
        except IntegrityError:
            logger.debug(f"Invoice number {invoice_number} already taken")
            return False

    def list_claimable(self, limit: int, stale_before: datetime) -> list[str]:
        statement = (
            select(submissions.c.id)
            .where(_claim_condition({InvoiceStatus.PENDING}, stale_before))
            .order_by(submissions.c.id)
            .limit(limit)
        )
        with self.engine.connect() as conn:
            return list(conn.execute(statement).scalars())

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning(f"Database ping failed: {e}")
            return False


class SqlProfileRepository:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get(self, contractor_id: str) -> ContractorProfile | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(contractor_profiles).where(contractor_profiles.c.user_id == contractor_id)
            ).mappings().first()
        if row is None:
            return None
        data = dict(row)
        data["contractor_id"] = data.pop("user_id")
        return ContractorProfile(**data)


class SqlRateRepository:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_active(self, contractor_id: str) -> ContractorRate | None:
        statement = (
            select(contractors.c.hourly_rate, contractors.c.overtime_rate)
            .where(contractors.c.contractor_id == contractor_id)
            .where(contractors.c.is_active.is_(True))
            .order_by(contractors.c.id.desc())
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(statement).mappings().first()
        if row is None:
            return None
        return ContractorRate(contractor_id=contractor_id, **row)
