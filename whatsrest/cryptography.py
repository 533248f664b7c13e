#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
Encryption of session records at rest, and salted hashes for API tokens.

Encrypted records are laid out as nonce (16 bytes) | tag (16 bytes) | ciphertext.
"""
import hashlib
import logging
from typing import Optional

import base58
from Crypto.Cipher import AES

from whatsrest import utils

SALT = utils.get_secret("SALT") or "ECmG8HtNNMWb4o2bzyMqCmPA6KTYJPCkd"
NONCE_SIZE = TAG_SIZE = 16


def load_key(encoded: str) -> Optional[bytes]:
    """Decode a base58 AES key, e.g. from `head -c 32 /dev/urandom | base58`.
    Returns None (records stay in plaintext) when it's unset or the wrong size"""
    if not encoded:
        return None
    key = base58.b58decode(encoded.encode())
    if len(key) not in (16, 32):
        logging.error(
            "SESSION_KEY decodes to %s bytes, need 16 or 32. storing sessions unencrypted",
            len(key),
        )
        return None
    return key


def encrypt(record: bytes, key: bytes) -> bytes:
    cipher = AES.new(key, AES.MODE_EAX, mac_len=TAG_SIZE)
    ciphertext, tag = cipher.encrypt_and_digest(record)
    return cipher.nonce + tag + ciphertext


def decrypt(blob: bytes, key: bytes) -> bytes:
    "raises ValueError when the blob was tampered with or the key is wrong"
    nonce, tag = blob[:NONCE_SIZE], blob[NONCE_SIZE : NONCE_SIZE + TAG_SIZE]
    cipher = AES.new(key, AES.MODE_EAX, nonce=nonce, mac_len=TAG_SIZE)
    return cipher.decrypt_and_verify(blob[NONCE_SIZE + TAG_SIZE :], tag)


def hash_salt(value: str, salt: str = SALT) -> str:
    return base58.b58encode(hashlib.sha256(f"{salt}{value}".encode()).digest()).decode()
