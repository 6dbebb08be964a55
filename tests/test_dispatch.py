"""Tests for outbound dispatch."""

import pytest

from omnichannel.domain.dispatch import gateway_timeout, retry_message, send_message
from omnichannel.domain.errors import (
    GatewayRejected,
    GatewayTimeout,
    GatewayUnavailable,
    InvalidArgument,
    InvalidStateTransition,
    NotFound,
)
from omnichannel.domain.ingestion import ingest_event
from omnichannel.domain.models import DeliveryResult, DeliveryStatus, Direction, Platform

from .helpers import BlockingGateway, FakeGateway, LogRecorder, make_event


@pytest.fixture
def budi_conversation(store):
    state = ingest_event(make_event(content="Halo"), store=store)
    return state.conversation


class TestSendToConversation:
    def test_success_records_sent(self, store, budi_conversation):
        gateway = FakeGateway(DeliveryResult(accepted=True, upstream_id="wamid.out"))
        msg = send_message(
            conversation_id=budi_conversation.id, content="Hi", store=store, gateway=gateway
        )

        assert msg.status == DeliveryStatus.SENT
        assert msg.direction == Direction.OUTBOUND
        assert msg.external_id == "wamid.out"
        assert gateway.requests[0].recipient_id == "62811"
        assert gateway.requests[0].platform == Platform.WHATSAPP

        conv = store.conversations[budi_conversation.id]
        assert conv.last_message_text == "Hi"
        assert conv.unread_count == 1

    def test_gateway_failure_keeps_failed_message(self, store, budi_conversation):
        gateway = FakeGateway(error=GatewayUnavailable("down"))

        with pytest.raises(GatewayUnavailable) as exc_info:
            send_message(
                conversation_id=budi_conversation.id, content="Hi", store=store, gateway=gateway
            )

        failed = exc_info.value.record
        assert failed.status == DeliveryStatus.FAILED
        assert store.messages[failed.id].status == DeliveryStatus.FAILED
        assert exc_info.value.retryable

        conv = store.conversations[budi_conversation.id]
        assert conv.last_message_text == "Hi"
        assert conv.unread_count == 1

    def test_rejection_is_not_retryable(self, store, budi_conversation):
        gateway = FakeGateway(DeliveryResult(accepted=False, reason="outside window"))

        with pytest.raises(GatewayRejected) as exc_info:
            send_message(
                conversation_id=budi_conversation.id, content="Hi", store=store, gateway=gateway
            )

        assert "outside window" in str(exc_info.value)
        assert not exc_info.value.retryable
        assert exc_info.value.record.status == DeliveryStatus.FAILED

    def test_unexpected_gateway_error_is_unavailable(self, store, budi_conversation):
        gateway = FakeGateway(error=RuntimeError("bug"))
        with pytest.raises(GatewayUnavailable):
            send_message(
                conversation_id=budi_conversation.id, content="Hi", store=store, gateway=gateway
            )

    def test_timeout_marks_failed(self, store, budi_conversation):
        gateway = BlockingGateway()
        try:
            with pytest.raises(GatewayTimeout) as exc_info:
                send_message(
                    conversation_id=budi_conversation.id,
                    content="Hi",
                    store=store,
                    gateway=gateway,
                    timeout=0.05,
                )
        finally:
            gateway.release.set()

        assert exc_info.value.record.status == DeliveryStatus.FAILED

    def test_matching_explicit_target_accepted(self, store, budi_conversation):
        msg = send_message(
            conversation_id=budi_conversation.id,
            platform="whatsapp",
            recipient_id="62811",
            content="Hi",
            store=store,
            gateway=FakeGateway(),
        )
        assert msg.status == DeliveryStatus.SENT

    @pytest.mark.parametrize(
        "platform, recipient_id",
        [("instagram", None), (None, "62999")],
    )
    def test_mismatched_target_rejected(self, store, budi_conversation, platform, recipient_id):
        gateway = FakeGateway()
        with pytest.raises(InvalidArgument):
            send_message(
                conversation_id=budi_conversation.id,
                platform=platform,
                recipient_id=recipient_id,
                content="Hi",
                store=store,
                gateway=gateway,
            )
        assert gateway.requests == []
        assert len(store.messages) == 1

    def test_unknown_conversation(self, store):
        with pytest.raises(NotFound):
            send_message(conversation_id="nope", content="Hi", store=store, gateway=FakeGateway())

    @pytest.mark.parametrize("content", ["", "   "])
    def test_empty_content(self, store, budi_conversation, content):
        with pytest.raises(InvalidArgument):
            send_message(
                conversation_id=budi_conversation.id,
                content=content,
                store=store,
                gateway=FakeGateway(),
            )

    def test_media_not_supported(self, store, budi_conversation):
        with pytest.raises(InvalidArgument):
            send_message(
                conversation_id=budi_conversation.id,
                content="http://x/img.png",
                content_type="image",
                store=store,
                gateway=FakeGateway(),
            )


class TestSendWithoutConversation:
    def test_business_writes_first(self, store):
        msg = send_message(
            platform="instagram",
            recipient_id="17841",
            content="Promo!",
            store=store,
            gateway=FakeGateway(),
        )

        assert msg.status == DeliveryStatus.SENT
        conv = store.conversations[msg.conversation_id]
        assert conv.platform == Platform.INSTAGRAM
        assert conv.unread_count == 0
        contact = store.contacts[conv.contact_id]
        assert contact.name == "17841"

    def test_reuses_existing_conversation(self, store, budi_conversation):
        msg = send_message(
            platform="whatsapp",
            recipient_id="62811",
            content="Hi",
            store=store,
            gateway=FakeGateway(),
        )
        assert msg.conversation_id == budi_conversation.id
        assert len(store.conversations) == 1

    @pytest.mark.parametrize(
        "platform, recipient_id",
        [(None, "62811"), ("whatsapp", None), ("fax", "62811")],
    )
    def test_target_required(self, store, platform, recipient_id):
        with pytest.raises(InvalidArgument):
            send_message(
                platform=platform,
                recipient_id=recipient_id,
                content="Hi",
                store=store,
                gateway=FakeGateway(),
            )


class TestRetry:
    def test_retry_creates_new_message(self, store, budi_conversation):
        with pytest.raises(GatewayUnavailable) as exc_info:
            send_message(
                conversation_id=budi_conversation.id,
                content="Hi",
                store=store,
                gateway=FakeGateway(error=GatewayUnavailable("down")),
            )
        failed = exc_info.value.record

        retried = retry_message(failed.id, store=store, gateway=FakeGateway())

        assert retried.id != failed.id
        assert retried.status == DeliveryStatus.SENT
        assert retried.content == "Hi"
        assert store.messages[failed.id].status == DeliveryStatus.FAILED

    def test_retry_sent_message_rejected(self, store, budi_conversation):
        sent = send_message(
            conversation_id=budi_conversation.id, content="Hi", store=store, gateway=FakeGateway()
        )
        with pytest.raises(InvalidStateTransition):
            retry_message(sent.id, store=store, gateway=FakeGateway())

    def test_retry_inbound_rejected(self, store, budi_conversation):
        inbound_id = next(iter(store.messages))
        with pytest.raises(InvalidStateTransition):
            retry_message(inbound_id, store=store, gateway=FakeGateway())

    def test_retry_unknown(self, store):
        with pytest.raises(NotFound):
            retry_message(12345, store=store, gateway=FakeGateway())


class TestNoPiiInLogs:
    def test_send_logs_hash_and_length_only(self, store, monkeypatch):
        from omnichannel.domain import dispatch

        state = ingest_event(
            make_event(platform=Platform.INSTAGRAM, sender_id="budi.private"), store=store
        )
        recorder = LogRecorder()
        monkeypatch.setattr(dispatch, "logger", recorder)

        send_message(
            conversation_id=state.conversation.id,
            content="secret text",
            store=store,
            gateway=FakeGateway(),
        )

        logged = recorder.get_all_logged_content()
        assert "budi.private" not in logged
        assert "secret text" not in logged
        assert any("to_hash" in f for f in recorder.extra_fields())


class TestGatewayTimeoutConfig:
    def test_default(self, monkeypatch):
        monkeypatch.delenv("GATEWAY_TIMEOUT_SECONDS", raising=False)
        assert gateway_timeout() == 10.0

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("GATEWAY_TIMEOUT_SECONDS", "2.5")
        assert gateway_timeout() == 2.5

    @pytest.mark.parametrize("raw", ["abc", "0", "-3"])
    def test_invalid_falls_back(self, monkeypatch, raw):
        monkeypatch.setenv("GATEWAY_TIMEOUT_SECONDS", raw)
        assert gateway_timeout() == 10.0
