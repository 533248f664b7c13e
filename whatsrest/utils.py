#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
import functools
import logging
import os
from pathlib import Path
from typing import Optional


def drop_aiohttp_noise(record: logging.LogRecord) -> bool:
    "aiohttp and the bridge readers complain about pending tasks on shutdown"
    text = str(getattr(record, "msg", ""))
    if "was destroyed but it is pending" in text:
        return False
    return not (text.startswith("task:") and text.endswith(">"))


def make_handler(handler: logging.Handler, name: str, level: str) -> logging.Handler:
    handler.set_name(name)
    handler.setLevel(level)
    handler.setFormatter(fmt)
    handler.addFilter(drop_aiohttp_noise)
    return handler


def install_handler(handler: logging.Handler) -> None:
    # reloading this module must not log every line twice
    for existing in list(logger.handlers):
        if existing.get_name() == handler.get_name():
            logger.removeHandler(existing)
    logger.addHandler(handler)


logger = logging.getLogger()
logger.setLevel("DEBUG")
fmt = logging.Formatter("{levelname} {module}:{lineno}: {message}", style="{")
install_handler(
    make_handler(
        logging.StreamHandler(),
        "whatsrest-console",
        ((os.getenv("LOGLEVEL") or os.getenv("LOG_LEVEL")) or "DEBUG").upper(),
    )
)


#### Configure Parameters

def parse_secrets(text: str) -> dict[str, str]:
    """
    Parse a `<ENV>_secrets` file: KEY=value lines, optionally prefixed with
    `export` and with the value in quotes. Blank lines and #comments are skipped.
    """
    parsed: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.removeprefix("export ").strip()
        value = value.strip()
        if len(value) > 1 and value[0] == value[-1] and value[0] in "'\"":
            value = value[1:-1]
        parsed[key] = value
    return parsed


@functools.cache  # read each secrets file once per process
def load_secrets(env: Optional[str] = None) -> None:
    "fill in os.environ from the secrets file; real environment variables win"
    name = f"{env or os.environ.get('ENV', 'dev')}_secrets"
    try:
        text = Path(name).read_text()
    except FileNotFoundError:
        return
    logging.info("loading secrets from %s", name)
    for key, value in parse_secrets(text).items():
        os.environ.setdefault(key, value)


def get_secret(key: str, env: Optional[str] = None) -> str:
    if key not in os.environ:
        load_secrets(env)
    secret = os.environ.get(key, "")
    # switched-off flags read as unset
    if secret.lower() in ("0", "false", "no"):
        return ""
    return secret


def get_int(key: str, default: int) -> int:
    try:
        return int(get_secret(key) or default)
    except ValueError:
        logging.warning("%s is not an integer, using %s", key, default)
        return default


## Parameters for easy access and ergonomic use

SERVER_IP = get_secret("SERVER_IP") or "0.0.0.0"
SERVER_PORT = get_int("SERVER_PORT", 3000)
STORE_PATH = get_secret("SERVER_STORE_PATH") or "./stores"
UPLOAD_PATH = get_secret("SERVER_UPLOAD_PATH") or "./uploads"
# megabytes, plus one for multipart overhead
UPLOAD_LIMIT = (get_int("SERVER_UPLOAD_LIMIT", 8) + 1) * 1024**2
BASE_PATH = get_secret("ROUTER_BASE_PATH").rstrip("/")
CORS_ORIGIN = get_secret("CORS_ALLOWED_ORIGIN") or "*"
CORS_METHODS = (
    get_secret("CORS_ALLOWED_METHOD") or "GET, POST, PUT, PATCH, DELETE, OPTIONS"
)
CORS_HEADERS = (
    get_secret("CORS_ALLOWED_HEADER")
    or "Origin, X-Requested-With, Content-Type, Accept, Authorization"
)
TRANSPORT_COMMAND = get_secret("TRANSPORT_COMMAND") or "whatsapp-bridge"
CLIENT_NAME = get_secret("CLIENT_NAME") or "WhatsApp REST"
LANGUAGE = get_secret("DIALOGFLOW_LANGUAGE") or "en"
# how long a started QR login waits for the scan
SCAN_TIMEOUT = get_int("QR_SCAN_TIMEOUT", 60)


#### Configure logging to file

if get_secret("LOGFILES"):
    install_handler(
        make_handler(logging.FileHandler("debug.log"), "whatsrest-file", "DEBUG")
    )


def session_path(account_id: str, store: str = "") -> str:
    "where the session record for an account lives"
    return str(Path(store or STORE_PATH) / f"{account_id}.session")
