#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
Outbound messages. Every send shows "composing" to the recipient and then
waits out the caller's delay before actually sending, which paces what we
put on the network.
"""
import asyncio
import logging
import time
from typing import IO, Union

from prometheus_client import Summary

from whatsrest.errors import (
    ConnectionAbsentError,
    ConnectionClosed,
    ConnectionInvalidError,
    SendTimedOut,
    TransportError,
    TransportFailure,
)
from whatsrest.message import destination_address
from whatsrest.registry import ConnectionRegistry
from whatsrest.transport import Connection

send_summary = Summary("send_s", "Time spent sending a message, delay included")

Attachment = Union[bytes, IO[bytes]]


class MessageDispatcher:
    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    async def _connection(self, account_id: str) -> Connection:
        entry = await self.registry.lookup(account_id)
        if not entry:
            raise ConnectionAbsentError()
        return entry.connection

    async def _compose(self, connection: Connection, address: str, delay: float) -> None:
        try:
            await connection.presence(address, "composing")
        except TransportError as e:
            logging.debug("ignoring presence error for %s: %s", address, e)
        if delay > 0:
            await asyncio.sleep(delay)

    async def _classify(self, account_id: str, connection: Connection, exc: TransportError) -> None:
        if isinstance(exc, SendTimedOut):
            # the message usually makes it anyway
            logging.info("send for %s timed out, assuming delivered", account_id)
            return
        if isinstance(exc, ConnectionClosed):
            await self.registry.remove(account_id, expected=connection)
            raise ConnectionInvalidError() from exc
        raise TransportFailure(str(exc)) from exc

    async def send_text(
        self, account_id: str, destination: str, text: str, delay: float = 0
    ) -> None:
        start = time.time()
        connection = await self._connection(account_id)
        address = destination_address(destination)
        await self._compose(connection, address, delay)
        try:
            await connection.send_text(address, text)
        except TransportError as e:
            await self._classify(account_id, connection, e)
        send_summary.observe(time.time() - start)
        logging.info("sent text from %s to %s", account_id, address)

    async def send_attachment(  # pylint: disable=too-many-arguments
        self,
        account_id: str,
        destination: str,
        stream: Attachment,
        mimetype: str,
        caption: str = "",
        delay: float = 0,
    ) -> None:
        start = time.time()
        connection = await self._connection(account_id)
        address = destination_address(destination)
        data = stream if isinstance(stream, bytes) else stream.read()
        await self._compose(connection, address, delay)
        try:
            await connection.send_attachment(address, data, mimetype, caption)
        except TransportError as e:
            await self._classify(account_id, connection, e)
        send_summary.observe(time.time() - start)
        logging.info("sent %s from %s to %s", mimetype, account_id, address)
