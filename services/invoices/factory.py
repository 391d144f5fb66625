"""Factory wiring the invoice pipeline from configuration.

Both the API and the background worker build their orchestrator here so the
two entry points share one set of collaborators per process.
"""

import logging

from services.invoices.assembler import BillingConfig, InvoiceDataAssembler
from services.invoices.orchestrator import GenerationOrchestrator
from services.numbering.allocator import SequenceAllocator
from services.rendering.renderer import DocumentRenderer
from services.repository.factory import Repositories, create_repositories
from services.shared.config import Settings
from services.storage.service import ArtifactStore

logger = logging.getLogger(__name__)


def create_orchestrator(
    settings: Settings,
    repositories: Repositories | None = None,
    store: ArtifactStore | None = None,
) -> GenerationOrchestrator:
    """Create a GenerationOrchestrator and its collaborators.

    Args:
        settings: Application settings
        repositories: Prebuilt repositories (defaults to settings.database_url)
        store: Prebuilt artifact store (defaults to a MinIO-backed store)

    Returns:
        Configured orchestrator

    Example:
        >>> settings = Settings(database_url="memory://")
        >>> orchestrator = create_orchestrator(settings)
        >>> link = orchestrator.get_or_create("sub-123", caller_id="user-1")
    """
    repositories = repositories or create_repositories(settings)
    store = store or ArtifactStore(settings)

    if not store.is_available():
        logger.warning(
            "Artifact storage is not configured. "
            "Set APP_STORAGE_ACCESS_KEY and APP_STORAGE_SECRET_KEY; generation will fail."
        )

    orchestrator = GenerationOrchestrator(
        settings=settings,
        repositories=repositories,
        allocator=SequenceAllocator(settings, repositories.submissions),
        assembler=InvoiceDataAssembler(BillingConfig.from_settings(settings), repositories.rates),
        renderer=DocumentRenderer(),
        store=store,
    )
    logger.info(
        f"Created invoice orchestrator (numbering scope: {settings.invoice_number_scope}, "
        f"link TTL: {settings.invoice_signed_url_ttl_seconds}s)"
    )
    return orchestrator
