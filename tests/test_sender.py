"""Tests for OptimisticSendCoordinator."""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeGateway, make_message, settle

from fansync.errors import ErrorKind, Rejected, TransportError
from fansync.gateway import PayloadLimits
from fansync.message_cache import MessageCache
from fansync.sender import OptimisticSendCoordinator, SendState, mint_temp_id
from fansync.types import ConversationKey, MessagePage, MessageStatus, SendPayload

KEY = ConversationKey(creator_id="cr", fan_id="fan")


def _coordinator(
    gateway: FakeGateway, cache: MessageCache | None = None, **kwargs
) -> tuple[OptimisticSendCoordinator, MessageCache]:
    cache = cache or MessageCache(KEY)
    return OptimisticSendCoordinator(gateway, cache, **kwargs), cache


def test_mint_temp_id_is_unique():
    ids = {mint_temp_id() for _ in range(100)}
    assert len(ids) == 100
    assert all(i.startswith("tmp-") for i in ids)


class TestSend:
    async def test_pending_is_visible_before_gateway_returns(self, gateway: FakeGateway):
        gateway.send_delay = 0.5
        sender, cache = _coordinator(gateway)

        temp_id = sender.send("hi")

        [message] = cache.render()
        assert message.temp_id == temp_id
        assert message.status is MessageStatus.PENDING
        assert message.from_creator is True
        assert message.text == "hi"
        assert sender.attempt(temp_id).state is SendState.DISPATCHING

        attempt = await sender.wait(temp_id)

        assert attempt.state is SendState.CONFIRMED
        [message] = cache.render()
        assert message.status is MessageStatus.CONFIRMED
        assert message.server_id == attempt.server_id
        assert cache.reconciliation() == {temp_id: attempt.server_id}

    async def test_confirmed_send_then_poll_shows_once(self, gateway: FakeGateway):
        sender, cache = _coordinator(gateway)
        temp_id = sender.send("hi")
        attempt = await sender.wait(temp_id)

        cache.merge_latest(
            MessagePage(messages=[make_message(attempt.server_id, 2000, text="hi", from_creator=True)])
        )

        assert [m.key for m in cache.render()] == [attempt.server_id]

    async def test_payload_is_normalized_before_dispatch(self, gateway: FakeGateway):
        sender, _ = _coordinator(gateway)
        temp_id = sender.send({"text": "  hello  ", "mediaUuids": ["m1"], "price": 500})
        await sender.wait(temp_id)

        [call] = gateway.sends
        assert call.payload == SendPayload(text="hello", media_refs=("m1",), price=500)
        assert (call.creator_id, call.fan_id) == ("cr", "fan")

    async def test_sends_keep_submission_order(self, gateway: FakeGateway):
        gateway.send_delay = 0.05
        sender, cache = _coordinator(gateway)
        first = sender.send("one")
        second = sender.send("two")

        assert [m.key for m in cache.render()] == [first, second]
        await sender.wait(first)
        await sender.wait(second)

    async def test_bad_payload_type_raises_without_side_effects(self, gateway: FakeGateway):
        sender, cache = _coordinator(gateway)
        with pytest.raises(TypeError):
            sender.send(42)  # type: ignore[arg-type]
        assert cache.render() == []
        assert gateway.sends == []

    async def test_collision_is_a_defect(self, gateway: FakeGateway):
        sender, _ = _coordinator(gateway, id_factory=lambda: "tmp-same")
        sender.send("one")
        with pytest.raises(RuntimeError, match="collision"):
            sender.send("two")
        await sender.wait("tmp-same")


class TestFailure:
    async def test_transport_error_marks_failed(self, gateway: FakeGateway):
        gateway.send_errors.append(TransportError("offline"))
        failures = []
        sender, cache = _coordinator(gateway, on_failure=failures.append)

        temp_id = sender.send("hi")
        attempt = await sender.wait(temp_id)

        assert attempt.state is SendState.FAILED
        assert attempt.error is ErrorKind.TRANSPORT
        [message] = cache.render()
        assert message.status is MessageStatus.FAILED
        assert message.error is ErrorKind.TRANSPORT
        assert [f.temp_id for f in failures] == [temp_id]

    async def test_unexpected_gateway_exception_marks_failed(self, gateway: FakeGateway):
        gateway.send_errors.append(KeyError("messageUuid"))
        failures = []
        sender, cache = _coordinator(gateway, on_failure=failures.append)

        temp_id = sender.send("hi")
        attempt = await sender.wait(temp_id)

        assert attempt.state is SendState.FAILED
        assert attempt.error is ErrorKind.TRANSPORT
        assert cache.pending(temp_id).status is MessageStatus.FAILED
        assert [f.temp_id for f in failures] == [temp_id]

        # Still retryable by the operator
        sender.retry(temp_id)
        attempt = await sender.wait(temp_id)
        assert attempt.state is SendState.CONFIRMED

    async def test_validation_failure_stays_visible(self, gateway: FakeGateway):
        sender, cache = _coordinator(gateway, limits=PayloadLimits(max_text_length=3))

        temp_id = sender.send("too long")
        attempt = await sender.wait(temp_id)

        assert attempt.error is ErrorKind.VALIDATION
        assert gateway.sends == []
        [message] = cache.render()
        assert message.status is MessageStatus.FAILED
        assert message.temp_id == temp_id

    async def test_empty_payload_fails_validation(self, gateway: FakeGateway):
        sender, cache = _coordinator(gateway)
        temp_id = sender.send("   ")
        attempt = await sender.wait(temp_id)
        assert attempt.error is ErrorKind.VALIDATION
        assert cache.render()[0].status is MessageStatus.FAILED

    async def test_price_without_media_fails_validation(self, gateway: FakeGateway):
        sender, _ = _coordinator(gateway)
        temp_id = sender.send({"text": "pay me", "price": 1000})
        attempt = await sender.wait(temp_id)
        assert attempt.error is ErrorKind.VALIDATION
        assert gateway.sends == []

    async def test_timeout_is_transport(self, gateway: FakeGateway):
        gateway.send_delay = 0.5
        sender, _ = _coordinator(gateway, timeout=0.01)
        attempt = await sender.wait(sender.send("hi"))
        assert attempt.error is ErrorKind.TRANSPORT

    async def test_failures_are_never_retried_automatically(self, gateway: FakeGateway):
        gateway.send_errors.append(TransportError())
        sender, _ = _coordinator(gateway)
        await sender.wait(sender.send("hi"))
        await asyncio.sleep(0.02)
        assert len(gateway.sends) == 1


class TestRetry:
    async def test_retry_reuses_payload_and_temp_id(self, gateway: FakeGateway):
        gateway.send_errors.append(TransportError())
        sender, cache = _coordinator(gateway)
        temp_id = sender.send({"text": "hi", "media_refs": ["m1"], "price": 700})
        await sender.wait(temp_id)

        sender.retry(temp_id)
        assert cache.pending(temp_id).status is MessageStatus.PENDING
        attempt = await sender.wait(temp_id)

        assert attempt.state is SendState.CONFIRMED
        assert attempt.attempts == 2
        first, second = gateway.sends
        assert first.payload == second.payload
        [message] = cache.render()
        assert message.temp_id == temp_id
        assert message.status is MessageStatus.CONFIRMED

    async def test_retry_can_fail_again(self, gateway: FakeGateway):
        gateway.send_errors.extend([TransportError(), Rejected("blocked")])
        sender, cache = _coordinator(gateway)
        temp_id = sender.send("hi")
        await sender.wait(temp_id)

        sender.retry(temp_id)
        attempt = await sender.wait(temp_id)

        assert attempt.error is ErrorKind.REJECTED
        assert cache.render()[0].error is ErrorKind.REJECTED

    async def test_retry_rejects_unknown_and_non_failed(self, gateway: FakeGateway):
        gateway.send_delay = 0.05
        sender, _ = _coordinator(gateway)
        temp_id = sender.send("hi")

        with pytest.raises(KeyError):
            sender.retry("tmp-nope")
        with pytest.raises(ValueError):
            sender.retry(temp_id)
        await sender.wait(temp_id)

    async def test_discard_removes_failed_message(self, gateway: FakeGateway):
        gateway.send_errors.append(Rejected())
        sender, cache = _coordinator(gateway)
        temp_id = sender.send("hi")
        await sender.wait(temp_id)

        sender.discard(temp_id)

        assert cache.render() == []
        assert sender.attempt(temp_id) is None
        with pytest.raises(KeyError):
            sender.discard(temp_id)


class TestDetach:
    async def test_detach_cancels_dispatch_without_reporting(self, gateway: FakeGateway):
        gateway.send_delay = 10
        changes: list[int] = []
        failures = []
        sender, cache = _coordinator(
            gateway, on_change=lambda: changes.append(1), on_failure=failures.append
        )
        temp_id = sender.send("hi")
        await settle(lambda: len(gateway.sends) == 1)
        changes.clear()

        sender.detach()
        cache.clear()
        await sender.wait_closed()

        assert changes == []
        assert failures == []
        assert sender.attempt(temp_id).state is SendState.DISPATCHING

    async def test_late_success_after_conversation_change_is_dropped(self, gateway: FakeGateway):
        gateway.send_delay = 0.02
        current = {"value": True}
        sender, cache = _coordinator(gateway, is_current=lambda: current["value"])
        temp_id = sender.send("hi")

        current["value"] = False
        await sender.wait(temp_id)

        assert cache.reconciliation() == {}
        assert cache.pending(temp_id).status is MessageStatus.PENDING

    async def test_send_after_detach_is_refused(self, gateway: FakeGateway):
        sender, _ = _coordinator(gateway)
        sender.detach()
        with pytest.raises(RuntimeError):
            sender.send("hi")
