#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
FYI: like the envelopes it wraps, this module uses a lot of `or`. The bridge can
send `{"caption": null}`, and we'd rather read that as "" than carry None around.
"""
import json
from typing import Any, Optional

TEXT = "text"
IMAGE = "image"

INDIVIDUAL_SUFFIX = "@s.whatsapp.net"
GROUP_SUFFIX = "@g.us"


def is_group(destination: str) -> bool:
    "group ids look like <creator>-<timestamp>; anything else is a person"
    parts = destination.split("-")
    return len(parts) == 2 and all(parts)


def destination_address(destination: str) -> str:
    return destination + (GROUP_SUFFIX if is_group(destination) else INDIVIDUAL_SUFFIX)


class InboundMessage:
    """
    A message delivered by the transport

    Attributes
    -----------
    blob: dict
       the envelope as the transport delivered it, forwarded to webhooks as-is
    """

    def __init__(self, blob: dict) -> None:
        self.blob = blob
        info: dict[str, Any] = blob.get("info") or {}
        self.id: str = info.get("id") or ""
        self.remote_jid: str = info.get("remoteJid") or ""
        self.from_me = bool(info.get("fromMe"))
        self.timestamp: Optional[int] = info.get("timestamp")
        self.kind: str = blob.get("kind") or ""
        self.text: str = blob.get("text") or ""
        self.caption: str = blob.get("caption") or ""
        self.mimetype: str = blob.get("type") or ""

    @property
    def sender(self) -> str:
        return self.remote_jid.split("@")[0]

    @property
    def utterance(self) -> str:
        "what we ask the understanding service about"
        return self.caption if self.kind == IMAGE else self.text

    @property
    def extension(self) -> str:
        _, _, subtype = self.mimetype.partition("/")
        # image/jpeg; charset=... never happens for images, but be safe
        return subtype.split(";")[0].strip()

    def to_dict(self) -> dict:
        return dict(self.blob)

    def __repr__(self) -> str:
        return f"InboundMessage: {json.dumps(self.blob, default=str)[:256]}"
