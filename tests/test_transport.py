import asyncio
import base64
import json
import pathlib
import sys

import pytest

from tests.mocktransport import ACCOUNT
from whatsrest import utils
from whatsrest.dispatch import MessageDispatcher
from whatsrest.errors import (
    AlreadyLoggedIn,
    ConnectionClosed,
    ConnectionInvalidError,
    SendTimedOut,
    TransportError,
)
from whatsrest.message import InboundMessage
from whatsrest.registry import ConnectionRegistry
from whatsrest.transport import JsonRpcTransport


async def answer(transport: JsonRpcTransport, **response) -> dict:
    """Take the next command off the outbox and feed back a response for it"""
    command = await asyncio.wait_for(transport.outbox.get(), timeout=1)
    await transport.handle_line(json.dumps({"jsonrpc": "2.0", "id": command["id"], **response}))
    return command


@pytest.mark.asyncio
async def test_login_over_jsonrpc() -> None:
    transport = JsonRpcTransport(ACCOUNT, 1, command="bridge")
    qr: asyncio.Future[str] = asyncio.get_running_loop().create_future()
    login = asyncio.create_task(transport.login(qr))
    command = await asyncio.wait_for(transport.outbox.get(), timeout=1)
    assert command["method"] == "login"
    await transport.handle_line(json.dumps({"method": "qr", "params": {"code": "2@abc"}}))
    assert qr.result() == "2@abc"
    session = base64.b64encode(b"session\x00").decode()
    await transport.handle_line(
        json.dumps({"id": command["id"], "result": {"session": session}})
    )
    assert await login == b"session\x00"
    assert transport.pending_requests == {}


@pytest.mark.asyncio
async def test_errors_are_typed() -> None:
    transport = JsonRpcTransport(ACCOUNT, 1, command="bridge")
    restore = asyncio.create_task(transport.restore(b"old"))
    command = await answer(transport, error={"code": 1, "message": "Already Logged In"})
    assert command["params"] == {"session": base64.b64encode(b"old").decode()}
    with pytest.raises(AlreadyLoggedIn):
        await restore
    send = asyncio.create_task(transport.send_text("123@s.whatsapp.net", "hi"))
    await answer(transport, error="media upload failed")
    with pytest.raises(TransportError, match="media upload failed"):
        await send


@pytest.mark.asyncio
async def test_inbound_messages_are_queued() -> None:
    transport = JsonRpcTransport(ACCOUNT, 1, command="bridge")
    await transport.handle_line("not json at all")
    await transport.handle_line(
        json.dumps(
            {
                "method": "message",
                "params": {
                    "kind": "text",
                    "info": {"id": "ABC", "remoteJid": "628@s.whatsapp.net"},
                    "text": "halo",
                },
            }
        )
    )
    message = transport.events.get_nowait()
    assert message.text == "halo"
    assert message.sender == "628"


@pytest.mark.asyncio
async def test_close_fails_pending() -> None:
    transport = JsonRpcTransport(ACCOUNT, 1, command="bridge")
    logout = asyncio.create_task(transport.logout())
    await asyncio.wait_for(transport.outbox.get(), timeout=1)
    await transport.close()
    with pytest.raises(ConnectionClosed):
        await logout


@pytest.mark.asyncio
async def test_unanswered_send_counts_as_send_timeout() -> None:
    transport = JsonRpcTransport(ACCOUNT, 0.05, command="bridge")
    with pytest.raises(SendTimedOut):
        await transport.send_text("123@s.whatsapp.net", "hi")
    assert transport.pending_requests == {}
    with pytest.raises(TransportError, match="restore session connection timed out"):
        await transport.restore(b"old")


@pytest.mark.asyncio
async def test_full_inbound_queue_does_not_block_replies() -> None:
    transport = JsonRpcTransport(ACCOUNT, 1, command="bridge", queue_size=4)
    send = asyncio.create_task(transport.send_text("123@s.whatsapp.net", "hi"))
    command = await asyncio.wait_for(transport.outbox.get(), timeout=1)
    for i in range(300):
        note = {"method": "message", "params": {"kind": "text", "text": f"m{i}"}}
        await asyncio.wait_for(transport.handle_line(json.dumps(note)), timeout=1)
    await transport.handle_line(json.dumps({"id": command["id"], "result": {}}))
    await asyncio.wait_for(send, timeout=1)
    assert transport.events.qsize() == 4
    assert transport.events.get_nowait().text == "m0"


@pytest.mark.asyncio
async def test_requests_after_close_fail_fast() -> None:
    transport = JsonRpcTransport(ACCOUNT, 1, command="bridge")
    await transport.close()
    with pytest.raises(ConnectionClosed):
        await asyncio.wait_for(transport.presence("123@s.whatsapp.net", "composing"), 1)
    assert transport.outbox.empty()


@pytest.mark.asyncio
async def test_silent_bridge_bounds_presence_logout_and_login(monkeypatch) -> None:
    monkeypatch.setattr(utils, "SCAN_TIMEOUT", 0.05)
    transport = JsonRpcTransport(ACCOUNT, 0.05, command="bridge")
    with pytest.raises(TransportError, match="presence update timed out"):
        await transport.presence("123@s.whatsapp.net", "composing")
    with pytest.raises(TransportError, match="logout timed out"):
        await transport.logout()
    qr: asyncio.Future[str] = asyncio.get_running_loop().create_future()
    with pytest.raises(TransportError, match="qr code scan timed out"):
        await transport.login(qr)
    assert transport.pending_requests == {}


FAKE_BRIDGE = f"{sys.executable} {pathlib.Path(__file__).parent / 'fakebridge.py'}"


@pytest.mark.asyncio
async def test_large_download_from_bridge_process() -> None:
    transport = await JsonRpcTransport.open(ACCOUNT, 5, command=f"{FAKE_BRIDGE} 200000")
    try:
        message = InboundMessage({"kind": "image", "info": {"id": "3EB0D8F5A2F1"}})
        assert await transport.download(message) == b"\xff" * 200000
    finally:
        await transport.close()


@pytest.mark.asyncio
async def test_unreadable_bridge_output_evicts_connection() -> None:
    registry = ConnectionRegistry(
        lambda account_id, timeout: JsonRpcTransport.open(
            account_id, timeout, command=f"{FAKE_BRIDGE} 100000", read_limit=4096
        )
    )
    entry = await registry.ensure(ACCOUNT, 5)
    message = InboundMessage({"kind": "image", "info": {"id": "3EB0D8F5A2F1"}})
    with pytest.raises(ConnectionClosed):
        await asyncio.wait_for(entry.connection.download(message), timeout=5)
    dispatcher = MessageDispatcher(registry)
    with pytest.raises(ConnectionInvalidError):
        await asyncio.wait_for(dispatcher.send_text(ACCOUNT, "123456789", "hi"), timeout=1)
    assert await registry.lookup(ACCOUNT) is None
