#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
Session lifecycle: connect, QR login, restore from a stored record, logout.

Lifecycle of a connect call: make sure there's a connection, restore the stored
session if there is one, fall back to a QR login otherwise, and save the
session record only once the transport says we're in.
"""
import asyncio
import base64
import io
import logging
from typing import Optional

import qrcode
from PIL import Image
from qrcode.exceptions import DataOverflowError
from prometheus_client import Counter

from whatsrest.bridge import InboundWebhookBridge
from whatsrest.errors import (
    AlreadyLoggedIn,
    ConnectionAbsentError,
    ConnectionClosed,
    ConnectionInvalidError,
    LoginInProgressError,
    PersistenceError,
    TimeoutExceededError,
    TransportError,
    TransportFailure,
    WhatsRestError,
)
from whatsrest.registry import AccountConnection, ConnectionRegistry
from whatsrest.sessionstore import SessionNotFound, SessionStore
from whatsrest.tasks import create_handled_task
from whatsrest.transport import Connection

QR_SIZE = 256

logins = Counter("logins", "Session authentications", labelnames=("method", "result"))


def qr_png_b64(payload: str) -> str:
    "the login payload as a base64 encoded 256x256 png"
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, border=4)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white").convert("RGB")
    img = img.resize((QR_SIZE, QR_SIZE), Image.NEAREST)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode()


class Handshake:
    """
    The first thing that happens during a connect call, which is what the
    caller is waiting for: a QR code to scan, an error, or plain success.
    Only the first outcome counts; later ones are logged and dropped.
    """

    def __init__(self) -> None:
        self.future: asyncio.Future[Optional[str]] = (
            asyncio.get_running_loop().create_future()
        )

    def qr(self, image: str) -> bool:
        return self._settle(image, None)

    def fail(self, exc: Exception) -> bool:
        return self._settle(None, exc)

    def succeed(self) -> bool:
        return self._settle(None, None)

    def _settle(self, image: Optional[str], exc: Optional[Exception]) -> bool:
        if self.future.done():
            if exc:
                logging.info("connect already answered, dropping: %s", exc)
            return False
        if exc:
            self.future.set_exception(exc)
        else:
            self.future.set_result(image)
        return True

    async def wait(self) -> Optional[str]:
        return await self.future


async def race_qr(
    payload: "asyncio.Future[str]", timeout: float, handshake: Handshake
) -> str:
    """Deliver the QR code or a timeout, whichever happens first, and cancel
    the other. Returns which one it was"""
    timer = asyncio.ensure_future(asyncio.sleep(timeout))
    waiter = asyncio.ensure_future(asyncio.shield(payload))
    try:
        done, _ = await asyncio.wait(
            {timer, waiter}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        timer.cancel()
        waiter.cancel()
    if waiter in done and not waiter.cancelled() and waiter.exception() is None:
        try:
            image = qr_png_b64(waiter.result())
        except (DataOverflowError, ValueError, OSError) as e:
            logging.error("couldn't render qr code: %s", e)
            handshake.fail(TransportFailure(str(e)))
            return "error"
        handshake.qr(image)
        return "qr"
    handshake.fail(TimeoutExceededError())
    return "timeout"


class SessionManager:
    def __init__(
        self,
        registry: ConnectionRegistry,
        store: Optional[SessionStore] = None,
        qr_timeout: Optional[float] = None,
        bridge: Optional[InboundWebhookBridge] = None,
    ) -> None:
        self.registry = registry
        self.store = store or SessionStore.from_secrets()
        self.qr_timeout = qr_timeout
        self.bridge = bridge
        self.tasks: set[asyncio.Task] = set()
        # connections with a login request out, one at a time per connection
        self.logging_in: set[Connection] = set()

    async def login(
        self,
        account_id: str,
        path: str,
        handshake: Optional[Handshake] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Interactive login. Removes any stale session file, asks the transport
        for a QR payload and races it against the timeout on `handshake`.
        Whether login worked is up to the transport, not the race.
        """
        entry = await self.registry.lookup(account_id)
        if not entry:
            raise ConnectionInvalidError()
        connection = entry.connection
        if connection in self.logging_in:
            raise LoginInProgressError()
        self.logging_in.add(connection)
        try:
            await self._login(account_id, path, connection, handshake, timeout)
        finally:
            self.logging_in.discard(connection)

    async def _login(
        self,
        account_id: str,
        path: str,
        connection: Connection,
        handshake: Optional[Handshake],
        timeout: Optional[float],
    ) -> None:
        self.store.delete(path)
        handshake = handshake or Handshake()
        payload: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        race = create_handled_task(
            race_qr(
                payload, self.qr_timeout or timeout or connection.timeout, handshake
            ),
            message="qr race for %s failed",
            message_args=(account_id,),
            name=f"qr-{account_id}",
        )
        try:
            session = await connection.login(payload)
        except AlreadyLoggedIn:
            logins.labels("login", "already").inc()
            logging.info("%s is already logged in", account_id)
            return
        except ConnectionClosed as e:
            logins.labels("login", "invalid").inc()
            await self.registry.remove(account_id, expected=connection)
            raise ConnectionInvalidError() from e
        except TransportError as e:
            logins.labels("login", "error").inc()
            raise TransportFailure(str(e)) from e
        finally:
            # a finished login makes the QR code moot either way
            if not race.done():
                race.cancel()
            payload.cancel()
        logins.labels("login", "ok").inc()
        self.store.save(path, session)

    async def restore(self, account_id: str, path: str, record: bytes) -> None:
        "log back in with a stored session record"
        entry = await self.registry.lookup(account_id)
        if not entry:
            raise ConnectionInvalidError()
        connection = entry.connection
        try:
            session = await connection.restore(record)
        except AlreadyLoggedIn:
            logins.labels("restore", "already").inc()
            return
        except ConnectionClosed as e:
            logins.labels("restore", "invalid").inc()
            await self.registry.remove(account_id, expected=connection)
            raise ConnectionInvalidError() from e
        except TransportError as e:
            logins.labels("restore", "error").inc()
            logging.info("restore failed for %s, logging out: %s", account_id, e)
            try:
                await connection.logout()
            except TransportError as logout_error:
                logging.warning("stale logout for %s failed: %s", account_id, logout_error)
            await self.registry.remove(account_id, expected=connection)
            raise TransportFailure(str(e)) from e
        logins.labels("restore", "ok").inc()
        self.store.save(path, session)

    def attach(self, account_id: str, entry: AccountConnection, webhook: str) -> None:
        "drain the connection's inbound events, forwarding them if there's a webhook"
        if webhook:
            entry.webhook = webhook
        if self.bridge:
            self.bridge.attach(account_id, entry)

    async def authenticate(
        self,
        account_id: str,
        path: str,
        timeout: float,
        handshake: Handshake,
        webhook: str = "",
    ) -> None:
        "restore if we have a stored session, falling back to a fresh QR login"
        try:
            record = self.store.load(path)
        except SessionNotFound:
            await self.login(account_id, path, handshake, timeout)
            return
        except PersistenceError as e:
            logging.warning("unusable session for %s: %s", account_id, e)
            await self.login(account_id, path, handshake, timeout)
            return
        try:
            await self.restore(account_id, path, record)
        except WhatsRestError as e:
            logging.info("restoring %s failed (%s), trying qr login", account_id, e)
            entry = await self.registry.ensure(account_id, timeout)
            self.attach(account_id, entry, webhook)
            await self.login(account_id, path, handshake, timeout)

    async def connect(
        self, account_id: str, path: str, timeout: float, webhook: str = ""
    ) -> Optional[str]:
        """
        Connect account_id. Returns a base64 png QR code when the account has to
        be scanned, None when it's logged in already. Authentication carries on in
        the background after a QR code is returned.
        """
        entry = await self.registry.ensure(account_id, timeout)
        self.attach(account_id, entry, webhook)
        handshake = Handshake()

        async def run() -> None:
            try:
                await self.authenticate(account_id, path, timeout, handshake, webhook)
            except WhatsRestError as e:
                handshake.fail(e)
                raise
            handshake.succeed()

        create_handled_task(
            run(),
            message="connecting %s failed",
            message_args=(account_id,),
            name=f"connect-{account_id}",
            keep=self.tasks,
        )
        return await handshake.wait()

    async def logout(self, account_id: str, path: str) -> None:
        entry = await self.registry.lookup(account_id)
        if not entry:
            raise ConnectionAbsentError()
        try:
            await entry.connection.logout()
        except ConnectionClosed as e:
            await self.registry.remove(account_id, expected=entry.connection)
            raise ConnectionInvalidError() from e
        except TransportError as e:
            raise TransportFailure(str(e)) from e
        self.store.delete(path)
        await self.registry.remove(account_id, expected=entry.connection)
        logging.info("logged out %s", account_id)
