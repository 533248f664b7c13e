#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
Forwards inbound messages to the account's webhook, enriched with whatever
the understanding service made of them. Nothing in here is allowed to hurt the
connection: failures are logged and the message is dropped.
"""
import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import aiohttp
from prometheus_client import Counter

from whatsrest import utils
from whatsrest.dialog import IntentDetector
from whatsrest.errors import TransportError, UpstreamIntentError, UpstreamWebhookError
from whatsrest.message import IMAGE, TEXT, InboundMessage
from whatsrest.tasks import create_handled_task

if TYPE_CHECKING:
    from whatsrest.registry import AccountConnection
    from whatsrest.transport import Connection

inbound_messages = Counter("inbound_messages", "Inbound messages", labelnames=("kind",))
webhook_failures = Counter("webhook_failures", "Webhook deliveries that failed")

UPSTREAM_TIMEOUT = 10.0


class InboundWebhookBridge:
    def __init__(
        self,
        detector: IntentDetector,
        project: Optional[str] = None,
        language: str = "",
        upload_path: str = "",
        client_session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.detector = detector
        self.project = (
            utils.get_secret("DIALOGFLOW_PROJECT_ID") if project is None else project
        )
        self.language = language or utils.LANGUAGE
        self.upload_path = Path(upload_path or utils.UPLOAD_PATH)
        self.client_session = client_session
        self.deliveries: set[asyncio.Task] = set()

    def attach(self, account_id: str, entry: "AccountConnection") -> None:
        "start draining this connection's events, once per connection"
        if entry.bridge_task and not entry.bridge_task.done():
            logging.debug("bridge already attached for %s", account_id)
            return
        logging.info(
            "draining inbound events for %s, webhook: %s",
            account_id,
            entry.webhook or "none",
        )
        entry.bridge_task = create_handled_task(
            self.consume(entry),
            message="inbound bridge for %s stopped",
            message_args=(account_id,),
            name=f"bridge-{account_id}",
        )

    async def consume(self, entry: "AccountConnection") -> None:
        events = entry.connection.events
        while True:
            message = await events.get()
            try:
                await self.handle(entry, message)
            except Exception:  # pylint: disable=broad-except
                logging.exception("error handling inbound message %s", message)

    async def handle(self, entry: "AccountConnection", message: InboundMessage) -> None:
        if message.kind not in (TEXT, IMAGE):
            logging.info("event: %s", message)
            return
        if message.from_me:
            return
        inbound_messages.labels(message.kind).inc()
        if not entry.webhook:
            logging.debug("no webhook, dropping %s", message.id)
            return
        try:
            result = await asyncio.wait_for(
                self.detector.detect(
                    self.project, message.sender, message.utterance, self.language
                ),
                timeout=UPSTREAM_TIMEOUT,
            )
        except (UpstreamIntentError, asyncio.TimeoutError) as e:
            logging.warning("intent detection failed for %s: %r", message.id, e)
            return
        payload = message.to_dict() | result.to_dict()
        create_handled_task(
            self.post(entry.webhook, payload),
            message="webhook delivery to %s errored",
            message_args=(entry.webhook,),
            keep=self.deliveries,
        )
        if message.kind == IMAGE:
            await self.save_attachment(entry.connection, message)

    async def session(self) -> aiohttp.ClientSession:
        if not self.client_session or self.client_session.closed:
            self.client_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=UPSTREAM_TIMEOUT)
            )
        return self.client_session

    async def post(self, url: str, payload: dict) -> None:
        "deliver once; failures are counted and logged, never retried"
        try:
            session = await self.session()
            async with session.post(url, json=payload) as resp:
                if resp.status >= 400:
                    raise UpstreamWebhookError(f"{url} returned {resp.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError, UpstreamWebhookError) as e:
            webhook_failures.inc()
            logging.warning("webhook delivery failed: %r", e)

    async def save_attachment(
        self, connection: "Connection", message: InboundMessage
    ) -> Optional[Path]:
        if not message.id or "/" in message.id or not message.extension:
            logging.warning("not storing attachment for %s", message)
            return None
        path = self.upload_path / f"{message.id}.{message.extension}"
        try:
            data = await asyncio.wait_for(
                connection.download(message), timeout=UPSTREAM_TIMEOUT
            )
            self.upload_path.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except (TransportError, OSError, asyncio.TimeoutError) as e:
            logging.warning("couldn't store attachment %s: %r", message.id, e)
            return None
        logging.info("stored: %s", path)
        return path

    async def close(self) -> None:
        for task in list(self.deliveries):
            task.cancel()
        if self.client_session:
            await self.client_session.close()
