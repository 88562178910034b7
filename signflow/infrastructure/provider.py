"""Signing provider contract.

The lifecycle engine only depends on the logical operations below. The HTTP
client lives in :mod:`signflow.infrastructure.provider_http`; when no
credentials are configured the process falls back to the in-process mock from
:mod:`signflow.infrastructure.provider_mock`, so local runs and tests never
need network access. Call ``configure_signing_provider`` during application
start-up to install a different client.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Literal, Protocol, Sequence

from signflow.core.settings import Settings
from signflow.domain import ParticipantRole

DownloadVariant = Literal["original", "signed", "printable", "protocol"]


class DocumentState(str, Enum):
    CREATED = "CREATED"
    FIRST_SIGNED = "FIRST_SIGNED"
    SECOND_SIGNED = "SECOND_SIGNED"


@dataclass(slots=True)
class ParticipantInput:
    """A signer registered on the provider document; lower ``priority`` signs first."""

    role: ParticipantRole
    full_name: str
    email: str | None = None
    tax_id: str | None = None
    priority: int = 1


@dataclass(slots=True)
class DocumentStatusResult:
    document_id: str
    status: DocumentState
    first_signed_at: datetime | None = None
    second_signed_at: datetime | None = None


@dataclass(slots=True)
class DownloadResult:
    document_id: str
    variant: DownloadVariant
    content: bytes
    content_type: str = "application/octet-stream"
    filename: str | None = None


class SigningProvider(Protocol):
    """Contract for signing provider integrations."""

    async def create_document(self, pdf_bytes: bytes, title: str) -> str:
        """Upload the PDF and return the provider document id."""

    async def add_participants(self, document_id: str, participants: Sequence[ParticipantInput]) -> None:
        """Register signers in priority order."""

    async def create_document_with_participants(
        self,
        pdf_bytes: bytes,
        title: str,
        participants: Sequence[ParticipantInput],
    ) -> str:
        """Create the document, add the signers and start the signing flow."""

    async def get_status(self, document_id: str) -> DocumentStatusResult:
        """Return the signing progress of the document."""

    async def download_file(self, document_id: str, variant: DownloadVariant) -> DownloadResult:
        """Download one of the document renditions."""

    async def revoke_public_links(self, document_id: str) -> None:
        """Invalidate public signing links; a document that is already gone counts as revoked."""

    async def generate_signing_link(self, document_id: str) -> str:
        """Return a URL the signer can be redirected to."""


def is_provider_configured(settings: Settings) -> bool:
    return settings.provider_configured


_provider: SigningProvider | None = None


def configure_signing_provider(provider: SigningProvider | None) -> None:
    """Install the provider used by the signing services; ``None`` restores the mock."""

    global _provider
    _provider = provider


def get_signing_provider() -> SigningProvider:
    """Return the currently configured provider, creating the mock on first use."""

    global _provider
    if _provider is None:
        from .provider_mock import MockSigningProvider

        _provider = MockSigningProvider()
    return _provider


__all__ = [
    "DocumentState",
    "DocumentStatusResult",
    "DownloadResult",
    "DownloadVariant",
    "ParticipantInput",
    "SigningProvider",
    "configure_signing_provider",
    "get_signing_provider",
    "is_provider_configured",
]
