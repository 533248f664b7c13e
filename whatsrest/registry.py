#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
The process-wide account -> connection mapping.

Handles are never kept across operations: look them up again every time, so
nobody ends up talking to a connection that's already been evicted.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from whatsrest.errors import TransportError, TransportFailure
from whatsrest.transport import Connection, JsonRpcTransport

ConnectionFactory = Callable[[str, float], Awaitable[Connection]]


@dataclass
class AccountConnection:
    connection: Connection
    created: float = field(default_factory=time.time)
    webhook: str = ""
    bridge_task: Optional[asyncio.Task] = None


class ConnectionRegistry:
    def __init__(self, factory: Optional[ConnectionFactory] = None) -> None:
        self.factory: ConnectionFactory = factory or JsonRpcTransport.open
        self._connections: dict[str, AccountConnection] = {}
        # accounts whose connection is being created, outside the lock
        self._creating: dict[str, "asyncio.Task[AccountConnection]"] = {}
        self._lock = asyncio.Lock()

    async def ensure(self, account_id: str, timeout: float) -> AccountConnection:
        """Create a connection for account_id unless there already is one.
        Concurrent calls for the same account share one creation; other
        accounts aren't held up while it runs"""
        async with self._lock:
            if account_id in self._connections:
                return self._connections[account_id]
            creating = self._creating.get(account_id)
            if creating is None:
                creating = asyncio.ensure_future(self._create(account_id, timeout))
                self._creating[account_id] = creating
        return await asyncio.shield(creating)

    async def _create(self, account_id: str, timeout: float) -> AccountConnection:
        connection: Optional[Connection] = None
        entry: Optional[AccountConnection] = None
        try:
            connection = await self.factory(account_id, timeout)
        except TransportError as e:
            raise TransportFailure(str(e)) from e
        finally:
            async with self._lock:
                del self._creating[account_id]
                if connection is not None:
                    entry = AccountConnection(connection)
                    self._connections[account_id] = entry
        assert entry
        logging.info("initialized connection for %s", account_id)
        return entry

    async def lookup(self, account_id: str) -> Optional[AccountConnection]:
        async with self._lock:
            return self._connections.get(account_id)

    async def remove(
        self, account_id: str, expected: Optional[Connection] = None
    ) -> Optional[AccountConnection]:
        """Evict account_id. With `expected`, only evict if that's still the
        registered connection; someone may have already replaced it"""
        async with self._lock:
            entry = self._connections.get(account_id)
            if not entry:
                return None
            if expected is not None and entry.connection is not expected:
                logging.info("not evicting %s, connection was replaced", account_id)
                return None
            del self._connections[account_id]
        logging.info("evicted connection for %s", account_id)
        if entry.bridge_task:
            entry.bridge_task.cancel()
        try:
            await entry.connection.close()
        except TransportError as e:
            logging.warning("error closing connection for %s: %s", account_id, e)
        return entry

    async def accounts(self) -> list[str]:
        async with self._lock:
            return list(self._connections)

    async def close(self) -> None:
        for creating in list(self._creating.values()):
            creating.cancel()
        for account_id in await self.accounts():
            await self.remove(account_id)
