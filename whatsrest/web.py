#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
The REST face of whatsrest: aiohttp handlers and app wiring
"""
import base64
import binascii
import glob
import logging
import os
import secrets
from functools import wraps
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional

from aiohttp import BasicAuth, web
from prometheus_async import aio

from whatsrest import utils
from whatsrest.bridge import InboundWebhookBridge
from whatsrest.cryptography import hash_salt
from whatsrest.dialog import DialogflowDetector, IntentDetector
from whatsrest.dispatch import MessageDispatcher
from whatsrest.errors import (
    AuthorizationError,
    InputValidationError,
    WhatsRestError,
)
from whatsrest.registry import ConnectionFactory, ConnectionRegistry
from whatsrest.session import SessionManager
from whatsrest.sessionstore import SessionStore

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

DEFAULT_TIMEOUT = 5


def envelope(message: str = "Success", code: int = 200, **data: Any) -> web.Response:
    body: dict[str, Any] = {"status": code < 400, "code": code, "message": message}
    if data:
        body["data"] = data
    return web.json_response(body, status=code)


def issue_token(username: str, password: str) -> str:
    return f"{username}:{hash_salt(username, salt=password)}"


def check_token(token: str, password: str) -> bool:
    username, _, _ = token.rpartition(":")
    return bool(username and password) and secrets.compare_digest(
        token.encode(), issue_token(username, password).encode()
    )


def requires_auth(handler: Handler) -> Handler:
    @wraps(handler)
    async def authorized_handler(request: web.Request) -> web.StreamResponse:
        scheme, _, token = request.headers.get("Authorization", "").partition(" ")
        if scheme.lower() != "bearer" or not check_token(
            token.strip(), request.app["auth_password"]
        ):
            raise AuthorizationError()
        return await handler(request)

    return authorized_handler


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except WhatsRestError as e:
        if e.status >= 500:
            logging.error("%s %s failed: %s", request.method, request.path, e)
        return envelope(str(e), e.status)


def get_field(form: Mapping, key: str, required: bool = True) -> str:
    value = form.get(key)
    if isinstance(value, str):
        value = value.strip()
    if required and not value:
        raise InputValidationError(f"missing {key}")
    return str(value) if value else ""


def get_number(form: Mapping, key: str, default: int) -> int:
    value = form.get(key)
    if value in (None, ""):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise InputValidationError(f"{key} must be a number") from e
    if number < 0:
        raise InputValidationError(f"{key} must not be negative")
    return number


def get_account(form: Mapping) -> str:
    account_id = get_field(form, "msisdn")
    # it names a file in the store
    if "/" in account_id or os.sep in account_id or account_id in (".", ".."):
        raise InputValidationError("invalid msisdn")
    return account_id


async def index(_: web.Request) -> web.Response:
    return envelope("WhatsApp REST is running")


async def health(_: web.Request) -> web.Response:
    return envelope("Service is healthy")


async def auth(request: web.Request) -> web.Response:
    "trade basic auth credentials for a bearer token"
    try:
        credentials = BasicAuth.decode(request.headers.get("Authorization", ""))
    except ValueError as e:
        raise AuthorizationError() from e
    password = request.app["auth_password"]
    if not (credentials.login and password) or not secrets.compare_digest(
        credentials.password.encode(), password.encode()
    ):
        raise AuthorizationError()
    return envelope(token=issue_token(credentials.login, password))


@requires_auth
async def login(request: web.Request) -> web.Response:
    form = await request.post()
    account_id = get_account(form)
    timeout = get_number(form, "timeout", DEFAULT_TIMEOUT)
    webhook = get_field(form, "webhook", required=False)
    sessions: SessionManager = request.app["sessions"]
    qrcode = await sessions.connect(
        account_id,
        utils.session_path(account_id, request.app["store_path"]),
        timeout,
        webhook,
    )
    if qrcode:
        return envelope(qrcode=qrcode)
    return envelope("Success, already logged in")


@requires_auth
async def send_text(request: web.Request) -> web.Response:
    form = await request.post()
    dispatcher: MessageDispatcher = request.app["dispatcher"]
    await dispatcher.send_text(
        get_account(form),
        get_field(form, "to"),
        get_field(form, "message"),
        get_number(form, "delay", 0),
    )
    return envelope()


@requires_auth
async def send_image(request: web.Request) -> web.Response:
    form = await request.post()
    image = form.get("image")
    if not isinstance(image, web.FileField):
        raise InputValidationError("missing image")
    dispatcher: MessageDispatcher = request.app["dispatcher"]
    await dispatcher.send_attachment(
        get_account(form),
        get_field(form, "to"),
        image.file,
        image.content_type,
        get_field(form, "message", required=False)
        or get_field(form, "caption", required=False),
        get_number(form, "delay", 0),
    )
    return envelope()


@requires_auth
async def send_generic(request: web.Request) -> web.Response:
    "json flavour of messagetext and messageimage"
    try:
        body = await request.json()
    except ValueError as e:
        raise InputValidationError("body must be json") from e
    if not isinstance(body, dict):
        raise InputValidationError("body must be a json object")
    account_id = get_account(body)
    destination = get_field(body, "to")
    delay = get_number(body, "delay", 0)
    dispatcher: MessageDispatcher = request.app["dispatcher"]
    if body.get("image"):
        try:
            data = base64.b64decode(body["image"], validate=True)
        except (binascii.Error, TypeError) as e:
            raise InputValidationError("image must be base64") from e
        await dispatcher.send_attachment(
            account_id,
            destination,
            data,
            get_field(body, "type"),
            get_field(body, "caption", required=False),
            delay,
        )
    else:
        await dispatcher.send_text(
            account_id, destination, get_field(body, "message"), delay
        )
    return envelope()


@requires_auth
async def get_attachment(request: web.Request) -> web.StreamResponse:
    message_id = request.match_info["messageID"]
    if not message_id or "/" in message_id or glob.has_magic(message_id):
        raise InputValidationError("invalid message id")
    matches = sorted(glob.glob(str(Path(request.app["upload_path"]) / f"{message_id}.*")))
    if not matches:
        return envelope("attachment not found", 404)
    return web.FileResponse(matches[0])


@requires_auth
async def logout(request: web.Request) -> web.Response:
    form = await request.post()
    account_id = get_account(form)
    sessions: SessionManager = request.app["sessions"]
    await sessions.logout(
        account_id, utils.session_path(account_id, request.app["store_path"])
    )
    return envelope()


async def add_cors_headers(_: web.Request, response: web.StreamResponse) -> None:
    response.headers["Access-Control-Allow-Origin"] = utils.CORS_ORIGIN
    response.headers["Access-Control-Allow-Methods"] = utils.CORS_METHODS
    response.headers["Access-Control-Allow-Headers"] = utils.CORS_HEADERS


async def close_everything(app: web.Application) -> None:
    await app["registry"].close()
    await app["bridge"].close()


def create_app(  # pylint: disable=too-many-arguments
    factory: Optional[ConnectionFactory] = None,
    detector: Optional[IntentDetector] = None,
    store: Optional[SessionStore] = None,
    store_path: str = "",
    upload_path: str = "",
    auth_password: Optional[str] = None,
) -> web.Application:
    app = web.Application(
        middlewares=[error_middleware], client_max_size=utils.UPLOAD_LIMIT
    )
    app["auth_password"] = (
        utils.get_secret("AUTH_PASSWORD") if auth_password is None else auth_password
    )
    if not app["auth_password"]:
        logging.warning("AUTH_PASSWORD is not set, nobody will be able to log in")
    app["store_path"] = store_path or utils.STORE_PATH
    app["upload_path"] = upload_path or utils.UPLOAD_PATH
    app["registry"] = registry = ConnectionRegistry(factory)
    app["bridge"] = bridge = InboundWebhookBridge(
        detector or DialogflowDetector(), upload_path=app["upload_path"]
    )
    app["sessions"] = SessionManager(registry, store, bridge=bridge)
    app["dispatcher"] = MessageDispatcher(registry)
    base = utils.BASE_PATH
    app.add_routes(
        [
            web.get(base + "/", index),
            web.get(base + "/health", health),
            web.get(base + "/auth", auth),
            web.post(base + "/login", login),
            web.post(base + "/messagetext", send_text),
            web.post(base + "/messageimage", send_image),
            web.post(base + "/logout", logout),
            web.post(base + "/messages/", send_generic),
            web.get(base + "/messages/{messageID}/data", get_attachment),
            web.get(base + "/metrics", aio.web.server_stats),
        ]
    )
    app.on_response_prepare.append(add_cors_headers)
    app.on_cleanup.append(close_everything)
    return app


def run_app() -> None:
    Path(utils.STORE_PATH).mkdir(parents=True, exist_ok=True)
    Path(utils.UPLOAD_PATH).mkdir(parents=True, exist_ok=True)
    web.run_app(
        create_app(), host=utils.SERVER_IP, port=utils.SERVER_PORT, access_log=None
    )


if __name__ == "__main__":
    run_app()
