#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
File-backed storage for session records.

A session record is whatever blob the transport hands us after a login or
restore. We never look inside it; we only promise to give back the same bytes.
"""
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from whatsrest import cryptography, utils
from whatsrest.errors import PersistenceError


class SessionNotFound(Exception):
    pass


class SessionStore:
    """
    Load, save, and delete session records, optionally encrypted at rest
    """

    def __init__(self, key: Optional[bytes] = None) -> None:
        self.key = key

    @classmethod
    def from_secrets(cls) -> "SessionStore":
        return cls(cryptography.load_key(utils.get_secret("SESSION_KEY")))

    def save(self, path: str, record: bytes) -> None:
        """Write the record next to its destination, then rename it into place,
        so the file at path is always either the old record or the new one"""
        target = Path(path)
        data = cryptography.encrypt(record, self.key) if self.key else record
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(
                dir=target.parent, prefix=f".{target.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "wb") as buffer:
                    buffer.write(data)
                    buffer.flush()
                    os.fsync(buffer.fileno())
                os.replace(tmp, target)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PersistenceError(f"could not save session to {path}: {e}") from e
        logging.debug("saved %s bytes of session to %s", len(record), path)

    def load(self, path: str) -> bytes:
        try:
            data = Path(path).read_bytes()
        except FileNotFoundError as e:
            raise SessionNotFound(path) from e
        except OSError as e:
            raise PersistenceError(f"could not load session from {path}: {e}") from e
        if not self.key:
            return data
        try:
            return cryptography.decrypt(data, self.key)
        except (ValueError, KeyError) as e:
            raise PersistenceError(f"could not decrypt session at {path}") from e

    def delete(self, path: str) -> None:
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"could not remove session at {path}: {e}") from e
        logging.debug("removed session %s", path)
