"""Infrastructure layer exports."""

from .jobs import DeferredJobRepository, InMemoryDeferredJobRepository
from .provider import (
    DocumentState,
    DocumentStatusResult,
    DownloadResult,
    ParticipantInput,
    SigningProvider,
    configure_signing_provider,
    get_signing_provider,
    is_provider_configured,
)
from .provider_http import HttpSigningProvider, provider_from_settings
from .provider_mock import MockSigningProvider
from .sheets import InMemorySheetRepository, SheetRepository
from .sqlite import SQLiteDeferredJobRepository, SQLiteSheetRepository, SQLiteStore

__all__ = [
    "DeferredJobRepository",
    "DocumentState",
    "DocumentStatusResult",
    "DownloadResult",
    "HttpSigningProvider",
    "InMemoryDeferredJobRepository",
    "InMemorySheetRepository",
    "MockSigningProvider",
    "ParticipantInput",
    "SQLiteDeferredJobRepository",
    "SQLiteSheetRepository",
    "SQLiteStore",
    "SheetRepository",
    "SigningProvider",
    "configure_signing_provider",
    "get_signing_provider",
    "is_provider_configured",
    "provider_from_settings",
]
