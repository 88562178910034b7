from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import httpx
import pytest

from signflow.core.errors import CriticalError, PermanentError
from signflow.core.retry import RetryOptions
from signflow.domain import ParticipantRole
from signflow.infrastructure.provider import DocumentState, ParticipantInput
from signflow.infrastructure.provider_http import HttpSigningProvider, map_document_status

API_BASE = "https://provider.test/api/v1"


async def _no_sleep(seconds: float) -> None:
    return None


def _provider(handler, *, max_attempts: int = 3) -> HttpSigningProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpSigningProvider(
        API_BASE,
        "secret-key",
        "org-42",
        retry=RetryOptions(max_attempts=max_attempts),
        http_client=client,
        sleep=_no_sleep,
    )


def test_map_status_prefers_participant_signals():
    payload = {
        "status": "CREATED",
        "participants": [
            {"priority": 2, "email": "bob@example.com", "signedAt": "2026-03-02T10:00:00Z"},
            {"priority": 1, "email": "alice@example.com", "isSigned": True, "executedAt": "2026-03-01T09:00:00Z"},
        ],
    }

    result = map_document_status("doc-1", payload)

    assert result.status is DocumentState.SECOND_SIGNED
    assert result.first_signed_at.isoformat() == "2026-03-01T09:00:00+00:00"
    assert result.second_signed_at.isoformat() == "2026-03-02T10:00:00+00:00"


def test_map_status_with_one_signature():
    payload = {"participants": [{"priority": 1, "signed": True}, {"priority": 2}]}

    result = map_document_status("doc-1", payload)

    assert result.status is DocumentState.FIRST_SIGNED
    assert result.first_signed_at is None
    assert result.second_signed_at is None


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        ("completed", DocumentState.SECOND_SIGNED),
        ("PARTIALLY_SIGNED", DocumentState.FIRST_SIGNED),
        ("SENT", DocumentState.CREATED),
        (None, DocumentState.CREATED),
    ],
)
def test_map_status_falls_back_to_document_status(status, expected):
    assert map_document_status("doc-1", {"status": status}).status is expected


def test_get_status_sends_credentials():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": "SIGNED"})

    provider = _provider(handler)
    result = asyncio.run(provider.get_status("doc-7"))

    assert result.status is DocumentState.SECOND_SIGNED
    assert len(seen) == 1
    request = seen[0]
    assert request.method == "GET"
    assert str(request.url) == f"{API_BASE}/documents/doc-7"
    assert request.headers["X-API-Key"] == "secret-key"
    assert request.headers["X-Organization-Id"] == "org-42"


def test_temporary_failures_are_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json={"url": "https://sign.test/abc"})

    provider = _provider(handler)
    url = asyncio.run(provider.generate_signing_link("doc-7"))

    assert url == "https://sign.test/abc"
    assert len(calls) == 3


def test_auth_failure_is_critical_and_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(401, json={"error": "bad key"})

    provider = _provider(handler)
    with pytest.raises(CriticalError) as excinfo:
        asyncio.run(provider.get_status("doc-7"))

    assert excinfo.value.code == "PROVIDER_HTTP_401"
    assert len(calls) == 1


def test_bad_request_is_permanent():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"error": "invalid participant"})

    provider = _provider(handler)
    with pytest.raises(PermanentError) as excinfo:
        asyncio.run(provider.generate_signing_link("doc-7"))
    assert "invalid participant" in excinfo.value.message


def test_revoke_treats_missing_document_as_done():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "DELETE"
        assert request.url.path.endswith("/documents/doc-7/public-links")
        return httpx.Response(404)

    provider = _provider(handler)
    asyncio.run(provider.revoke_public_links("doc-7"))


def test_create_document_with_participants_starts_the_flow():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        if request.url.path.endswith("/documents"):
            return httpx.Response(201, json={"documentId": "doc-9"})
        if request.url.path.endswith("/participants"):
            body = json.loads(request.content)
            assert [item["role"] for item in body["participants"]] == ["FIRST_SIGNER", "SECOND_SIGNER"]
            assert body["participants"][0]["email"] == "alice@example.com"
        return httpx.Response(204)

    participants = [
        ParticipantInput(ParticipantRole.SECOND_SIGNER, "Bob Counter", "bob@example.com", priority=2),
        ParticipantInput(ParticipantRole.FIRST_SIGNER, "Alice Owner", "alice@example.com", priority=1),
    ]
    provider = _provider(handler)
    document_id = asyncio.run(provider.create_document_with_participants(b"%PDF-1.4", "Survey", participants))

    assert document_id == "doc-9"
    assert calls == [
        ("POST", "/api/v1/documents"),
        ("POST", "/api/v1/documents/doc-9/participants"),
        ("POST", "/api/v1/documents/doc-9/start"),
    ]


def test_download_reads_filename_from_headers():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["file"] == "signed"
        return httpx.Response(
            200,
            content=b"PKCS7",
            headers={
                "content-type": "application/pkcs7-signature",
                "content-disposition": 'attachment; filename="survey-signed.p7s"',
            },
        )

    provider = _provider(handler)
    result = asyncio.run(provider.download_file("doc-7", "signed"))

    assert result.content == b"PKCS7"
    assert result.filename == "survey-signed.p7s"
    assert result.content_type == "application/pkcs7-signature"


def test_non_json_body_is_a_contract_violation():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>maintenance</html>")

    provider = _provider(handler)
    with pytest.raises(CriticalError) as excinfo:
        asyncio.run(provider.get_status("doc-7"))
    assert excinfo.value.code == "PROVIDER_CONTRACT"


def test_api_base_requires_scheme_and_host():
    with pytest.raises(ValueError):
        HttpSigningProvider("provider.test", "key", "org")
