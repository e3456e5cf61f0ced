"""Test suite for the per-conversation send gate."""

from uuid import uuid4

import pytest

from plasmamind_chat.domain.errors import SendInProgress
from plasmamind_chat.services.send_gate import CancelToken, SendGate, SendPhase


@pytest.mark.asyncio
async def test_second_send_is_rejected_while_busy():
    gate = SendGate()
    conversation_id = uuid4()

    async with gate.acquire(conversation_id) as inflight:
        inflight.advance(SendPhase.DISPATCHED_CHAT)
        assert gate.is_busy(conversation_id)
        assert gate.phase(conversation_id) == SendPhase.DISPATCHED_CHAT
        with pytest.raises(SendInProgress):
            async with gate.acquire(conversation_id):
                pass

    assert not gate.is_busy(conversation_id)
    assert gate.phase(conversation_id) == SendPhase.IDLE
    assert inflight.phases == [SendPhase.DISPATCHED_CHAT, SendPhase.IDLE]


@pytest.mark.asyncio
async def test_other_conversations_are_independent():
    gate = SendGate()
    first, second = uuid4(), uuid4()

    async with gate.acquire(first):
        async with gate.acquire(second):
            assert gate.is_busy(first) and gate.is_busy(second)


@pytest.mark.asyncio
async def test_gate_is_released_after_an_exception():
    gate = SendGate()
    conversation_id = uuid4()

    with pytest.raises(RuntimeError):
        async with gate.acquire(conversation_id):
            raise RuntimeError("boom")

    async with gate.acquire(conversation_id):
        assert gate.is_busy(conversation_id)


@pytest.mark.asyncio
async def test_cancel_signals_the_inflight_token():
    gate = SendGate()
    conversation_id = uuid4()
    token = CancelToken()

    assert gate.cancel(conversation_id) is False
    async with gate.acquire(conversation_id, token) as inflight:
        assert inflight.token is token
        assert gate.cancel(conversation_id) is True
        assert token.cancelled
