"""Factory for the persistence backend selected by configuration."""

import logging
from dataclasses import dataclass

from services.repository.base import ProfileRepository, RateRepository, SubmissionRepository
from services.repository.memory import (
    InMemoryProfileRepository,
    InMemoryRateRepository,
    InMemoryStore,
    InMemorySubmissionRepository,
)
from services.repository.sql import (
    SqlProfileRepository,
    SqlRateRepository,
    SqlSubmissionRepository,
    create_db_engine,
    create_tables,
)
from services.shared.config import Settings

logger = logging.getLogger(__name__)

MEMORY_URL = "memory://"


@dataclass
class Repositories:
    """Repository set handed to the orchestrator."""

    submissions: SubmissionRepository
    profiles: ProfileRepository
    rates: RateRepository


def in_memory_repositories(store: InMemoryStore | None = None) -> Repositories:
    store = store or InMemoryStore()
    return Repositories(
        submissions=InMemorySubmissionRepository(store),
        profiles=InMemoryProfileRepository(store),
        rates=InMemoryRateRepository(store),
    )


def create_repositories(settings: Settings) -> Repositories:
    """Build repositories for ``settings.database_url``.

    ``memory://`` selects the in-process store. Any other value is treated as
    a SQLAlchemy URL; outside production the tables are created if missing.

    Args:
        settings: Application settings with database_url

    Returns:
        Repositories bound to the configured backend
    """
    if settings.database_url == MEMORY_URL:
        logger.warning("Using in-memory repositories; data is lost on restart")
        return in_memory_repositories()

    engine = create_db_engine(settings.database_url)
    if settings.environment != "production":
        create_tables(engine)

    logger.info(f"Created SQL repositories for {engine.url.render_as_string(hide_password=True)}")
    return Repositories(
        submissions=SqlSubmissionRepository(engine),
        profiles=SqlProfileRepository(engine),
        rates=SqlRateRepository(engine),
    )
