#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
Connections to the messaging network.

`Connection` is everything the session orchestrators need from a transport.
`JsonRpcTransport` implements it on top of an external bridge process that
speaks line-delimited JSON-RPC on stdin/stdout and does the actual protocol work.
"""
import abc
import asyncio
import asyncio.subprocess as subprocess  # https://github.com/PyCQA/pylint/issues/1469
import base64
import json
import logging
from asyncio import Queue, QueueFull, StreamReader, StreamWriter
from asyncio.subprocess import PIPE
from typing import Any, Optional

import termcolor
from ulid2 import generate_ulid_as_base32 as get_uid

from whatsrest import utils
from whatsrest.errors import (
    SCAN_TIMED_OUT,
    SENDING_TIMED_OUT,
    ConnectionClosed,
    TransportError,
    transport_error,
)
from whatsrest.message import InboundMessage

JSON = dict[str, Any]

EVENT_QUEUE_SIZE = 256
# one json line carries a whole base64 attachment
READ_LIMIT = utils.UPLOAD_LIMIT * 4 // 3 + 2**16


class Connection(abc.ABC):
    """
    One logged in (or logging in) account on the messaging network.
    Inbound messages are put on `events`; when nobody drains it, new messages
    are dropped instead of buffering forever.
    """

    def __init__(
        self, account_id: str, timeout: float, queue_size: int = EVENT_QUEUE_SIZE
    ) -> None:
        self.account_id = account_id
        self.timeout = timeout
        self.events: Queue[InboundMessage] = Queue(maxsize=queue_size)

    @abc.abstractmethod
    async def login(self, qr: "asyncio.Future[str]") -> bytes:
        """Start an interactive login. The raw QR payload is set on `qr` as soon as
        the network hands it out; returns the session record once it's scanned"""

    @abc.abstractmethod
    async def restore(self, session: bytes) -> bytes:
        "log in with a stored session record, returning the refreshed one"

    @abc.abstractmethod
    async def send_text(self, to: str, text: str) -> None:
        pass

    @abc.abstractmethod
    async def send_attachment(
        self, to: str, data: bytes, mimetype: str, caption: str = ""
    ) -> None:
        pass

    @abc.abstractmethod
    async def presence(self, to: str, state: str) -> None:
        pass

    @abc.abstractmethod
    async def logout(self) -> None:
        pass

    @abc.abstractmethod
    async def download(self, message: InboundMessage) -> bytes:
        "fetch the media attached to an inbound message"

    async def close(self) -> None:
        pass


def rpc(method: str, _id: str, **params: Any) -> JSON:
    return {"jsonrpc": "2.0", "method": method, "id": _id, "params": params}


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


class JsonRpcTransport(Connection):
    """
    Represents a bridge process session for one account.
    I/O: reads the bridge's output and resolves pending requests or queues
    inbound messages, and writes json blobs to the bridge's stdin.
    """

    def __init__(
        self,
        account_id: str,
        timeout: float,
        command: str = "",
        queue_size: int = EVENT_QUEUE_SIZE,
        read_limit: int = READ_LIMIT,
    ) -> None:
        super().__init__(account_id, timeout, queue_size)
        self.command = command or utils.TRANSPORT_COMMAND
        self.read_limit = read_limit
        # set once the bridge can no longer answer; every later request fails fast
        self.closed_reason = ""
        self.proc: Optional[subprocess.Process] = None
        self.outbox: Queue[JSON] = Queue()
        self.pending_requests: dict[str, asyncio.Future[JSON]] = {}
        self.qr: Optional[asyncio.Future[str]] = None
        self.tasks: list[asyncio.Task] = []

    @classmethod
    async def open(
        cls, account_id: str, timeout: float, **options: Any
    ) -> "JsonRpcTransport":
        "start a bridge process for account_id and wait for it to connect"
        conn = cls(account_id, timeout, **options)
        await conn.start_process()
        try:
            await asyncio.wait_for(
                conn.request("connect", clientName=utils.CLIENT_NAME, timeout=timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            await conn.close()
            raise TransportError("timed out connecting to the bridge") from e
        except TransportError:
            await conn.close()
            raise
        return conn

    async def start_process(self) -> None:
        command = [*self.command.split(), "--account", self.account_id, "jsonRpc"]
        logging.info(command)
        try:
            self.proc = await asyncio.create_subprocess_exec(
                *command, stdin=PIPE, stdout=PIPE, limit=self.read_limit
            )
        except FileNotFoundError as e:
            raise TransportError(f"couldn't find {command[0]}") from e
        logging.info(
            "started %s @ %s with PID %s",
            command[0],
            self.account_id,
            self.proc.pid,
        )
        assert self.proc.stdout and self.proc.stdin
        self.tasks = [
            asyncio.create_task(self.read_stdout(self.proc.stdout)),
            asyncio.create_task(self.write_commands(self.proc.stdin)),
        ]

    async def read_stdout(self, stream: StreamReader) -> None:
        """Read bridge output but delegate handling it. However the reader stops,
        the connection is dead from then on and waiting requests fail"""
        reason = "bridge process exited"
        try:
            while True:
                line = (await stream.readline()).decode().strip()
                if not line:
                    break
                await self.handle_line(line)
        except ValueError as e:
            # a line longer than read_limit
            logging.error("unreadable bridge output for %s: %s", self.account_id, e)
            reason = f"unreadable bridge output: {e}"
        finally:
            logging.info("stopped reading bridge stdout for %s", self.account_id)
            self.mark_closed(reason)

    async def handle_line(self, line: str) -> None:
        "decode json, resolve the request it answers or queue the message it carries"
        try:
            blob = json.loads(line)
        except json.JSONDecodeError:
            logging.info("bridge: %s", line)
            return
        rpc_id = blob.get("id")
        if rpc_id and rpc_id in self.pending_requests:
            future = self.pending_requests.pop(rpc_id)
            if future.done():
                return
            if "error" in blob:
                error = blob["error"]
                text = error.get("message", "") if isinstance(error, dict) else str(error)
                logging.error(
                    "bridge error for %s: %s", rpc_id, termcolor.colored(text, "red")
                )
                future.set_exception(transport_error(text))
            else:
                future.set_result(blob.get("result") or {})
            return
        method = blob.get("method")
        params = blob.get("params") or {}
        if method == "qr":
            if self.qr and not self.qr.done():
                self.qr.set_result(params.get("code", ""))
        elif method == "message":
            message = InboundMessage(params)
            try:
                self.events.put_nowait(message)
            except QueueFull:
                # replies to requests come down the same pipe, never wait here
                logging.warning(
                    "inbound queue full for %s, dropping %s", self.account_id, message
                )
        else:
            logging.info("bridge: %s", line)

    async def write_commands(self, pipe: StreamWriter) -> None:
        """Encode and write pending bridge commands"""
        try:
            while True:
                command = await self.outbox.get()
                if command.get("method") not in ("send", "download"):
                    logging.info("input to bridge: %s", json.dumps(command))
                pipe.write(json.dumps(command).encode() + b"\n")
                await pipe.drain()
        except ConnectionError as e:
            logging.error("bridge stdin for %s is closed: %s", self.account_id, e)
            self.mark_closed(f"bridge stdin closed: {e}")

    def mark_closed(self, reason: str) -> None:
        self.closed_reason = self.closed_reason or reason
        self.fail_pending(ConnectionClosed(self.closed_reason))

    def fail_pending(self, exc: Exception) -> None:
        for future in self.pending_requests.values():
            if not future.done():
                future.set_exception(exc)
        self.pending_requests.clear()

    async def request(self, method: str, **params: Any) -> JSON:
        """Send a jsonRpc command to the bridge and wait for its result"""
        if self.closed_reason:
            raise ConnectionClosed(self.closed_reason)
        rpc_id = f"{method}-{get_uid()}"
        future: asyncio.Future[JSON] = asyncio.get_running_loop().create_future()
        self.pending_requests[rpc_id] = future
        await self.outbox.put(rpc(method, rpc_id, **params))
        try:
            return await future
        finally:
            self.pending_requests.pop(rpc_id, None)

    async def timed_request(
        self,
        method: str,
        expired: str,
        deadline: Optional[float] = None,
        **params: Any,
    ) -> JSON:
        """Like request, but turns a missing answer into the transport error
        `expired`. Waits `deadline` seconds, the connection timeout by default"""
        try:
            return await asyncio.wait_for(
                self.request(method, **params), deadline or self.timeout
            )
        except asyncio.TimeoutError as e:
            raise transport_error(expired) from e

    async def login(self, qr: "asyncio.Future[str]") -> bytes:
        self.qr = qr
        result = await self.timed_request(
            "login", SCAN_TIMED_OUT, deadline=utils.SCAN_TIMEOUT
        )
        return base64.b64decode(result.get("session", ""))

    async def restore(self, session: bytes) -> bytes:
        result = await self.timed_request(
            "restore", "restore session connection timed out", session=b64(session)
        )
        return base64.b64decode(result.get("session", ""))

    async def send_text(self, to: str, text: str) -> None:
        await self.timed_request("send", SENDING_TIMED_OUT, to=to, text=text)

    async def send_attachment(
        self, to: str, data: bytes, mimetype: str, caption: str = ""
    ) -> None:
        await self.timed_request(
            "send",
            SENDING_TIMED_OUT,
            to=to,
            attachment=b64(data),
            type=mimetype,
            caption=caption,
        )

    async def presence(self, to: str, state: str) -> None:
        await self.timed_request(
            "presence", "presence update timed out", to=to, state=state
        )

    async def logout(self) -> None:
        await self.timed_request("logout", "logout timed out")

    async def download(self, message: InboundMessage) -> bytes:
        result = await self.timed_request(
            "download", "media download timed out", id=message.id
        )
        return base64.b64decode(result.get("data", ""))

    async def close(self) -> None:
        for task in self.tasks:
            task.cancel()
        if self.proc:
            try:
                self.proc.kill()
                await self.proc.wait()
            except ProcessLookupError:
                logging.info("no bridge process for %s", self.account_id)
        self.mark_closed("connection closed")
