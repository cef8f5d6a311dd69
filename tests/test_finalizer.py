"""
Tests for the finalization pipeline and queues.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import fitz
import httpx
import pytest

from app.exceptions import (
    DocumentNotCompleteError,
    ExternalServiceError,
    FinalizationValidationError,
    NotFoundError,
)
from app.models import EventType, Invitation, InvitationStatus, SignatureField
from app.services.finalizer import (
    FINAL_PDF_PREFIX,
    FinalizationPipeline,
    FinalizationTask,
    HttpFinalizationQueue,
    Placement,
    resolve_placements,
    validate_signature_set,
)
from tests.helpers import create_sent_document, sign

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _field(field_id: str, page: int = 1, y: float = 0.1, x: float = 0.1, invitation_id=None) -> SignatureField:
    return SignatureField(
        id=field_id, document_id="doc", page=page, x=x, y=y, width=0.3, height=0.1, invitation_id=invitation_id,
    )


def _completed(inv_id: str, minutes: int = 0, **overrides) -> Invitation:
    values = dict(
        id=inv_id,
        document_id="doc",
        token_hash="h",
        recipient_email=f"{inv_id}@example.com",
        status=InvitationStatus.COMPLETED,
        expires_at=T0 + timedelta(days=7),
        signed_at=T0 + timedelta(minutes=minutes),
        signature_ref=f"signatures/{inv_id}.png",
        signer_name=f"Signer {inv_id}",
    )
    values.update(overrides)
    return Invitation(**values)


class TestResolvePlacements:
    def test_assigned_fields_used(self):
        fields = [_field("f1", invitation_id="a"), _field("f2", y=0.5, invitation_id="b")]
        placements, unplaced = resolve_placements(fields, [_completed("a"), _completed("b")])

        assert {(p.invitation.id, p.field.id) for p in placements} == {("a", "f1"), ("b", "f2")}
        assert unplaced == []

    def test_invitation_with_several_fields(self):
        fields = [_field("f1", invitation_id="a"), _field("f2", page=2, invitation_id="a")]
        placements, _ = resolve_placements(fields, [_completed("a")])
        assert [p.field.id for p in placements] == ["f1", "f2"]

    def test_unassigned_fields_follow_signing_order(self):
        fields = [_field("bottom", y=0.8), _field("top", y=0.1), _field("page2", page=2, y=0.0)]
        invitations = [_completed("late", minutes=10), _completed("early", minutes=1)]

        placements, _ = resolve_placements(fields, invitations)

        assert [(p.invitation.id, p.field.id) for p in placements] == [("early", "top"), ("late", "bottom")]

    def test_more_signers_than_free_fields_reuse_first(self):
        placements, unplaced = resolve_placements(
            [_field("only")], [_completed("a", 1), _completed("b", 2)],
        )
        assert [p.field.id for p in placements] == ["only", "only"]
        assert unplaced == []

    def test_no_field_available(self):
        placements, unplaced = resolve_placements(
            [_field("f1", invitation_id="a")], [_completed("a"), _completed("b")],
        )
        assert [p.invitation.id for p in placements] == ["a"]
        assert [i.id for i in unplaced] == ["b"]


class TestValidateSignatureSet:
    def test_valid_set(self):
        validate_signature_set([Placement(invitation=_completed("a"), field=_field("f1"))], [])

    def test_collects_every_error(self):
        placements = [
            Placement(invitation=_completed("a", signature_ref=None), field=_field("f1")),
            Placement(invitation=_completed("b", signer_name="  "), field=_field("f2")),
            Placement(invitation=_completed("c", signed_at=None), field=_field("f3")),
        ]

        with pytest.raises(FinalizationValidationError) as exc_info:
            validate_signature_set(placements, [_completed("d")])

        errors = exc_info.value.errors
        assert len(errors) == 4
        assert any("a: missing signature image" in e for e in errors)
        assert any("b: missing signer name" in e for e in errors)
        assert any("c: missing signing time" in e for e in errors)
        assert any("d: no signature field" in e for e in errors)
        assert exc_info.value.details == {"errors": errors}

    def test_empty_set(self):
        with pytest.raises(FinalizationValidationError, match="No signatures"):
            validate_signature_set([], [])


class TestFinalizationPipeline:
    @pytest.mark.asyncio
    async def test_completed_document_is_finalized(self, services, store, blob_store, email_service, signature_png):
        document, tokens = await create_sent_document(
            services, [("sam@example.com", "Sam"), ("ria@example.com", "Ria")],
        )
        await sign(services, tokens[0], signature_png, name="Sam Signer")
        submission = await sign(services, tokens[1], signature_png, name="Ria Signer")

        result = submission.completion.finalization
        assert result.generated is True
        assert result.final_pdf_ref.startswith(f"{FINAL_PDF_PREFIX}/Service_Agreement_signed_")
        assert result.final_pdf_ref.endswith(f"_{document.id[:8]}.pdf")
        assert result.skipped == []
        assert store.documents[document.id]["final_pdf_ref"] == result.final_pdf_ref

        with fitz.open(stream=blob_store.objects[result.final_pdf_ref], filetype="pdf") as pdf:
            text = pdf[0].get_text()
            assert "Signed by: Sam Signer" in text
            assert "Signed by: Ria Signer" in text
            assert "Digitally Signed Document" in text

        assert store.event_types(document.id).count(EventType.DOCUMENT_FINALIZED) == 1
        assert result.notifications.total == 3

    @pytest.mark.asyncio
    async def test_idempotent(self, services, store, blob_store, email_service, signature_png):
        document, tokens = await create_sent_document(services, [("sam@example.com", "Sam")])
        first = (await sign(services, tokens[0], signature_png, name="Sam Signer")).completion.finalization
        puts_before = len(blob_store.puts)
        mails_before = len(email_service.sent)

        again = await services.pipeline.finalize(document.id)

        assert again.generated is False
        assert again.final_pdf_ref == first.final_pdf_ref
        assert len(blob_store.puts) == puts_before
        assert len(email_service.sent) == mails_before

    @pytest.mark.asyncio
    async def test_concurrent_runs_produce_one_artifact(self, services, store, blob_store, email_service, signature_png):
        document, tokens = await create_sent_document(services, [("sam@example.com", "Sam")])
        # Complete the invitation without triggering the pipeline
        services.completion.queue = AsyncMock()
        await sign(services, tokens[0], signature_png, name="Sam Signer")

        results = await asyncio.gather(
            services.pipeline.finalize(document.id),
            services.pipeline.finalize(document.id),
        )

        refs = {r.final_pdf_ref for r in results}
        assert len(refs) == 1
        assert sum(1 for r in results if r.generated) == 1
        assert refs.pop() in blob_store.objects
        assert store.event_types(document.id).count(EventType.DOCUMENT_FINALIZED) == 1
        assert store.event_types(document.id).count(EventType.COMPLETION_NOTIFICATIONS_SENT) == 1
        assert len(email_service.subjects_for("sam@example.com")) == 2  # invitation + completion

    @pytest.mark.asyncio
    async def test_not_completed(self, services):
        document, _ = await create_sent_document(services, [("sam@example.com", "Sam")])
        with pytest.raises(DocumentNotCompleteError):
            await services.pipeline.finalize(document.id)

    @pytest.mark.asyncio
    async def test_unknown_document(self, services):
        with pytest.raises(NotFoundError):
            await services.pipeline.finalize("missing")

    @pytest.mark.asyncio
    async def test_missing_signature_image_is_skipped(self, services, store, blob_store, signature_png):
        document, tokens = await create_sent_document(
            services, [("sam@example.com", "Sam"), ("ria@example.com", "Ria")],
        )
        services.completion.queue = AsyncMock()
        first = await sign(services, tokens[0], signature_png, name="Sam Signer")
        await sign(services, tokens[1], signature_png, name="Ria Signer")
        blob_store.fail_fetch.add(first.signature_ref)

        result = await services.pipeline.finalize(document.id)

        assert result.generated is True
        assert result.skipped == [first.invitation.id]

    @pytest.mark.asyncio
    async def test_no_embeddable_signature_leaves_document_unfinalized(self, services, store, blob_store, signature_png):
        document, tokens = await create_sent_document(
            services, [("sam@example.com", "Sam"), ("ria@example.com", "Ria")],
        )
        services.completion.queue = AsyncMock()
        submissions = [
            await sign(services, tokens[0], signature_png, name="Sam Signer"),
            await sign(services, tokens[1], signature_png, name="Ria Signer"),
        ]
        blob_store.fail_fetch.update(s.signature_ref for s in submissions)

        with pytest.raises(ExternalServiceError):
            await services.pipeline.finalize(document.id)

        assert store.documents[document.id].get("final_pdf_ref") is None
        assert not any(p.startswith(f"{FINAL_PDF_PREFIX}/") for p in blob_store.puts)

        # Storage recovers; the retry produces the real artifact
        blob_store.fail_fetch.clear()
        result = await services.pipeline.finalize(document.id)

        assert result.generated is True
        assert result.skipped == []
        assert store.documents[document.id]["final_pdf_ref"] == result.final_pdf_ref

    @pytest.mark.asyncio
    async def test_invalid_signature_set_writes_nothing(self, services, store, blob_store, signature_png):
        document, tokens = await create_sent_document(services, [("sam@example.com", "Sam")])
        services.completion.queue = AsyncMock()
        submission = await sign(services, tokens[0], signature_png, name="Sam Signer")
        store.set_invitation(submission.invitation.id, signer_name="")
        puts_before = len(blob_store.puts)

        with pytest.raises(FinalizationValidationError):
            await services.pipeline.finalize(document.id)

        assert len(blob_store.puts) == puts_before
        assert store.documents[document.id].get("final_pdf_ref") is None

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_finalization(self, store, blob_store, signature_png):
        notifier = MagicMock()
        notifier.notify_completion = AsyncMock(side_effect=RuntimeError("smtp down"))
        pipeline = FinalizationPipeline(store, blob_store, MagicMock(), notifier)
        pipeline.pdf_signer.embed_signatures.return_value = MagicMock(pdf_bytes=b"%PDF-1.7", embedded=1, skipped=[])

        store.documents["doc"] = {
            "id": "doc", "title": "T", "status": "completed", "source_pdf_ref": "documents/doc/source.pdf",
            "owner_id": "o", "owner_email": "o@example.com",
        }
        store.fields["f1"] = {
            "id": "f1", "document_id": "doc", "page": 1, "x": 0.1, "y": 0.1, "width": 0.2, "height": 0.1,
            "required": True, "label": None, "invitation_id": "a",
        }
        store.invitations["a"] = _completed("a").model_dump(mode="python")
        blob_store.objects["documents/doc/source.pdf"] = b"%PDF-source"
        blob_store.objects["signatures/a.png"] = signature_png

        result = await pipeline.finalize("doc")

        assert result.generated is True
        assert result.notifications is None
        assert store.documents["doc"]["final_pdf_ref"] == result.final_pdf_ref


def _http_response(status_code: int) -> httpx.Response:
    return httpx.Response(status_code, request=httpx.Request("POST", "https://worker.test/internal/v1/finalize"))


class TestHttpFinalizationQueue:
    @pytest.fixture
    def queue(self):
        return HttpFinalizationQueue("https://worker.test/", "internal-secret", timeout=5)

    def _patched(self, post):
        client = AsyncMock()
        client.__aenter__.return_value = client
        client.__aexit__.return_value = None
        client.post = post
        return patch("app.services.finalizer.httpx.AsyncClient", return_value=client)

    @pytest.mark.asyncio
    async def test_delivers_task(self, queue):
        post = AsyncMock(return_value=_http_response(200))

        with self._patched(post):
            assert await queue.enqueue(FinalizationTask(document_id="doc-1")) is None

        args, kwargs = post.call_args
        assert args[0] == "https://worker.test/internal/v1/finalize"
        assert kwargs["json"] == {"document_id": "doc-1"}
        assert kwargs["headers"] == {"X-Internal-Secret": "internal-secret"}

    @pytest.mark.asyncio
    async def test_retries_server_errors(self, queue):
        post = AsyncMock(side_effect=[_http_response(503), httpx.ConnectError("refused"), _http_response(200)])

        with self._patched(post), patch("app.services.finalizer.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await queue.enqueue(FinalizationTask(document_id="doc-1"))

        assert post.await_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [2, 4]

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self, queue):
        post = AsyncMock(return_value=_http_response(500))

        with self._patched(post), patch("app.services.finalizer.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(ExternalServiceError, match="delivery failed"):
                await queue.enqueue(FinalizationTask(document_id="doc-1"))

        assert post.await_count == 3

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, queue):
        post = AsyncMock(return_value=_http_response(403))

        with self._patched(post):
            with pytest.raises(ExternalServiceError, match="rejected: 403"):
                await queue.enqueue(FinalizationTask(document_id="doc-1"))

        assert post.await_count == 1

    def test_http_mode_uses_finalization_timeout(self, store, blob_store, email_service):
        from app.config import Settings
        from app.services.container import build_services

        settings = Settings(
            FINALIZATION_MODE="http",
            INTERNAL_BASE_URL="https://worker.test/",
            INTERNAL_API_SECRET="internal-secret",
            FINALIZATION_TIMEOUT_SECONDS=95,
            EMAIL_TIMEOUT_SECONDS=12,
            GCP_PROJECT_ID="",
            ENVIRONMENT="test",
        )

        services = build_services(settings, store=store, blob_store=blob_store, email_service=email_service)

        assert isinstance(services.queue, HttpFinalizationQueue)
        assert services.queue.timeout == 95
