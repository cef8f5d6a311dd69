"""
HTTP API tests.

The app runs against the in-memory backends through dependency overrides;
owners authenticate with the admin secret headers.
"""
import pytest
from fastapi.testclient import TestClient

from app.config import get_settings
from app.main import app
from app.services.container import get_services
from app.utils.rate_limiter import get_signing_rate_limiter
from tests.helpers import as_data_url, make_pdf, token_from_url

OWNER_HEADERS = {
    "X-Admin-Secret": "admin-secret",
    "X-User-ID": "owner-1",
    "X-User-Email": "owner@example.com",
    "X-User-Name": "Olivia Owner",
}
OTHER_OWNER_HEADERS = {**OWNER_HEADERS, "X-User-ID": "owner-2", "X-User-Email": "other@example.com"}
INTERNAL_HEADERS = {"X-Internal-Secret": "internal-secret"}


@pytest.fixture
def client(settings, services):
    app.dependency_overrides[get_services] = lambda: services
    app.dependency_overrides[get_settings] = lambda: settings
    get_signing_rate_limiter().reset()
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _upload(client, title="Lease.pdf", content=None, headers=OWNER_HEADERS):
    return client.post(
        "/documents",
        files={"file": ("lease.pdf", content or make_pdf(), "application/pdf")},
        data={"title": title},
        headers=headers,
    )


def _sent_document(client, signers=("sam@example.com", "ria@example.com")):
    """Upload, place one field per signer, prepare and invite; returns (document_id, tokens)."""
    document_id = _upload(client).json()["id"]
    fields = [
        {"page": 1, "x": 0.1, "y": 0.1 + 0.2 * i, "width": 0.3, "height": 0.1}
        for i in range(len(signers))
    ]
    saved = client.put(f"/documents/{document_id}/signature-fields", json={"fields": fields}, headers=OWNER_HEADERS)
    assert saved.status_code == 200
    assert client.post(f"/documents/{document_id}/prepare", headers=OWNER_HEADERS).status_code == 200

    field_ids = [f["id"] for f in saved.json()["fields"]]
    response = client.post(
        f"/documents/{document_id}/send-invitations",
        json={
            "signers": [
                {"email": email, "name": email.split("@")[0].title(), "assigned_field_ids": [field_ids[i]]}
                for i, email in enumerate(signers)
            ],
            "expires_in_days": 7,
        },
        headers=OWNER_HEADERS,
    )
    assert response.status_code == 200
    return document_id, [token_from_url(i["signing_url"]) for i in response.json()["invitations"]]


def _submit(client, token, png, name="Sam Signer"):
    return client.post(
        "/sign/submit",
        json={"token": token, "signature_image": as_data_url(png), "signer_name": name},
        headers={"User-Agent": "pytest-browser", "X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
    )


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["finalization_mode"] == "inline"
        assert body["configured"]["owner_auth"] is True


class TestOwnerAuth:
    def test_missing_credentials(self, client):
        response = client.get("/documents/doc-1")
        assert response.status_code == 401
        body = response.json()
        assert body["error"] is True
        assert body["code"] == "MISSING_AUTH"
        assert "request_id" in body

    def test_wrong_admin_secret(self, client):
        response = client.get("/documents/doc-1", headers={**OWNER_HEADERS, "X-Admin-Secret": "nope"})
        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_ADMIN_SECRET"

    def test_other_owner_forbidden(self, client):
        document_id = _upload(client).json()["id"]
        response = client.get(f"/documents/{document_id}", headers=OTHER_OWNER_HEADERS)
        assert response.status_code == 403
        assert response.json()["code"] == "NOT_DOCUMENT_OWNER"

    def test_request_id_echoed(self, client):
        response = client.get("/documents/doc-1", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"


class TestDocuments:
    def test_upload(self, client, blob_store):
        response = _upload(client, title="Lease 2024")

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "draft"
        assert body["title"] == "Lease 2024"
        assert f"documents/{body['id']}/source.pdf" in blob_store.objects

    def test_upload_rejects_non_pdf(self, client):
        response = _upload(client, content=b"GIF89a not a pdf")
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_PDF"

    def test_unknown_document(self, client):
        response = client.get("/documents/missing", headers=OWNER_HEADERS)
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_field_outside_page_rejected(self, client):
        document_id = _upload(client).json()["id"]
        response = client.put(
            f"/documents/{document_id}/signature-fields",
            json={"fields": [{"page": 1, "x": 0.9, "y": 0.1, "width": 0.3, "height": 0.1}]},
            headers=OWNER_HEADERS,
        )
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_field_on_missing_page_rejected(self, client):
        document_id = _upload(client).json()["id"]
        response = client.put(
            f"/documents/{document_id}/signature-fields",
            json={"fields": [{"page": 9, "x": 0.1, "y": 0.1, "width": 0.3, "height": 0.1}]},
            headers=OWNER_HEADERS,
        )
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_FIELD"

    def test_prepare_without_fields(self, client):
        document_id = _upload(client).json()["id"]
        response = client.post(f"/documents/{document_id}/prepare", headers=OWNER_HEADERS)
        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_TRANSITION"

    def test_fields_locked_after_prepare(self, client):
        document_id, _ = _sent_document(client)
        response = client.put(
            f"/documents/{document_id}/signature-fields",
            json={"fields": [{"page": 1, "x": 0.1, "y": 0.1, "width": 0.3, "height": 0.1}]},
            headers=OWNER_HEADERS,
        )
        assert response.status_code == 409
        assert response.json()["code"] == "DOCUMENT_LOCKED"

    def test_invalid_expiration(self, client):
        document_id = _upload(client).json()["id"]
        fields = client.put(
            f"/documents/{document_id}/signature-fields",
            json={"fields": [{"page": 1, "x": 0.1, "y": 0.1, "width": 0.3, "height": 0.1}]},
            headers=OWNER_HEADERS,
        ).json()["fields"]
        client.post(f"/documents/{document_id}/prepare", headers=OWNER_HEADERS)

        response = client.post(
            f"/documents/{document_id}/send-invitations",
            json={
                "signers": [{"email": "sam@example.com", "assigned_field_ids": [fields[0]["id"]]}],
                "expires_in_days": 31,
            },
            headers=OWNER_HEADERS,
        )
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_EXPIRATION"

    def test_cancel_and_delete(self, client, store):
        document_id, _ = _sent_document(client)

        cancelled = client.post(f"/documents/{document_id}/cancel", headers=OWNER_HEADERS)
        assert cancelled.json()["status"] == "cancelled"
        again = client.post(f"/documents/{document_id}/cancel", headers=OWNER_HEADERS)
        assert again.status_code == 409

        assert client.delete(f"/documents/{document_id}", headers=OWNER_HEADERS).status_code == 204
        assert document_id not in store.documents

    def test_delete_invitation(self, client, store):
        document_id, _ = _sent_document(client)
        invitation_id = next(iter(store.invitations))

        response = client.delete(f"/documents/{document_id}/invitations/{invitation_id}", headers=OWNER_HEADERS)

        assert response.status_code == 204
        assert client.get(f"/documents/{document_id}", headers=OWNER_HEADERS).json()["invitation_count"] == 1


class TestSigning:
    def test_validate_token(self, client):
        document_id, tokens = _sent_document(client)

        response = client.post("/sign/validate-token", json={"token": tokens[0]})

        assert response.status_code == 200
        data = response.json()["signing_data"]
        assert data["document_id"] == document_id
        assert data["recipient_email"] == "sam@example.com"
        assert data["is_expired"] is False
        assert len(data["signature_fields"]) == 1

    def test_unknown_token(self, client):
        response = client.post("/sign/validate-token", json={"token": "Zq3vN8pW1xK5mR7tY2uB9cD4eF6gH0jL"})
        assert response.status_code == 404
        assert response.json()["code"] == "TOKEN_NOT_FOUND"

    def test_submit_records_request_context(self, client, store, signature_png):
        _, tokens = _sent_document(client)

        response = _submit(client, tokens[0], signature_png)

        assert response.status_code == 200
        body = response.json()
        assert body["all_signatures_complete"] is False
        row = store.invitations[body["invitation_id"]]
        assert row["signer_ip"] == "203.0.113.9"
        assert row["signer_user_agent"] == "pytest-browser"

    def test_double_submit(self, client, signature_png):
        _, tokens = _sent_document(client)
        _submit(client, tokens[0], signature_png)

        response = _submit(client, tokens[0], signature_png)

        assert response.status_code == 409
        assert response.json()["code"] == "ALREADY_SIGNED"

    def test_empty_signature(self, client):
        _, tokens = _sent_document(client)
        response = client.post(
            "/sign/submit",
            json={"token": tokens[0], "signature_image": "data:image/png;base64,", "signer_name": "Sam"},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "EMPTY_SIGNATURE"

    def test_progress_and_result(self, client, signature_png):
        _, tokens = _sent_document(client)
        _submit(client, tokens[0], signature_png, name="Sam Signer")

        progress = client.post("/sign/progress", json={"token": tokens[1]}).json()
        assert progress["signing_progress"]["progress_percentage"] == 50
        assert progress["document"]["status"] == "partially_signed"

        result = client.post("/sign/result", json={"token": tokens[0]}).json()
        assert result["signer_name"] == "Sam Signer"
        assert result["all_signatures_complete"] is False

    def test_rate_limited(self, client):
        limiter = get_signing_rate_limiter()
        for _ in range(limiter.max_tokens):
            limiter.is_allowed("testclient")

        response = client.post("/sign/validate-token", json={"token": "Zq3vN8pW1xK5mR7tY2uB9cD4eF6gH0jL"})

        assert response.status_code == 429
        assert response.json()["code"] == "RATE_LIMIT_EXCEEDED"
        assert int(response.headers["Retry-After"]) > 0


class TestCompletionAndDownload:
    def test_full_flow(self, client, signature_png):
        document_id, tokens = _sent_document(client)
        _submit(client, tokens[0], signature_png, name="Sam Signer")

        not_ready = client.get(f"/documents/{document_id}/download", headers=OWNER_HEADERS)
        assert not_ready.status_code == 400
        assert not_ready.json()["code"] == "DOCUMENT_NOT_FINALIZED"

        last = _submit(client, tokens[1], signature_png, name="Ria Signer")
        assert last.json()["all_signatures_complete"] is True

        status = client.get(f"/documents/{document_id}/completion-status", headers=OWNER_HEADERS).json()
        assert status["metrics"]["is_fully_complete"] is True
        assert status["metrics"]["is_document_finalized"] is True

        finalize = client.post(f"/documents/{document_id}/finalize", headers=OWNER_HEADERS).json()
        assert finalize["generated"] is False
        assert finalize["download_url"].startswith("https://blob.test/completed-documents/")

        download = client.get(f"/documents/{document_id}/download", headers=OWNER_HEADERS)
        assert download.status_code == 200
        assert download.headers["content-type"] == "application/pdf"
        assert "Lease_signed.pdf" in download.headers["content-disposition"]
        assert "no-store" in download.headers["cache-control"]
        assert download.content.startswith(b"%PDF")

        signer_download = client.get(f"/documents/{document_id}/download", params={"token": tokens[0]})
        assert signer_download.status_code == 200

    def test_download_requires_identity(self, client):
        document_id, _ = _sent_document(client)
        response = client.get(f"/documents/{document_id}/download")
        assert response.status_code == 403
        assert response.json()["code"] == "DOWNLOAD_FORBIDDEN"

    def test_signer_who_has_not_signed_cannot_download(self, client, signature_png):
        document_id, tokens = _sent_document(client)
        _submit(client, tokens[0], signature_png)
        response = client.get(f"/documents/{document_id}/download", params={"token": tokens[1]})
        assert response.status_code == 403

    def test_finalize_before_completion(self, client):
        document_id, _ = _sent_document(client)
        response = client.post(f"/documents/{document_id}/finalize", headers=OWNER_HEADERS)
        assert response.status_code == 409
        assert response.json()["code"] == "DOCUMENT_NOT_COMPLETE"


class TestInternal:
    def test_missing_secret(self, client):
        response = client.post("/internal/v1/finalize", json={"document_id": "doc"})
        assert response.status_code == 401
        assert response.json()["code"] == "HTTP_ERROR"

    def test_wrong_secret(self, client):
        response = client.post(
            "/internal/v1/finalize", json={"document_id": "doc"}, headers={"X-Internal-Secret": "nope"},
        )
        assert response.status_code == 403

    def test_finalize_task_is_idempotent(self, client, services, signature_png):
        document_id, tokens = _sent_document(client, signers=("sam@example.com",))
        _submit(client, tokens[0], signature_png)

        response = client.post("/internal/v1/finalize", json={"document_id": document_id}, headers=INTERNAL_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["generated"] is False
        assert body["final_pdf_ref"].startswith("completed-documents/")

    def test_expire(self, client, store):
        from datetime import timedelta
        from app.utils.datetime_utils import utc_now

        document_id, _ = _sent_document(client, signers=("sam@example.com",))
        store.set_invitation(next(iter(store.invitations)), expires_at=utc_now() - timedelta(days=2))

        response = client.post("/internal/v1/expire", json={"document_id": document_id}, headers=INTERNAL_HEADERS)

        assert response.status_code == 200
        assert response.json()["status"] == "expired"
