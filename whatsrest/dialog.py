#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
Intent detection for inbound messages, backed by Dialogflow.
"""
import logging
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any, Optional, Protocol

from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import dialogflow

from whatsrest import utils
from whatsrest.errors import UpstreamIntentError


@dataclass
class IntentResult:
    intent: str = ""
    confidence: float = 0.0
    entities: dict[str, str] = field(default_factory=dict)
    fulfillment: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


class IntentDetector(Protocol):
    async def detect(
        self, project: str, session_key: str, utterance: str, language: str
    ) -> IntentResult:
        ...


def number(value: float) -> str:
    return f"{value:.6f}"


def extract_entity(value: Any) -> str:
    """Flatten a Dialogflow parameter value to a string.
    Structs only keep amount, unit and date_time; lists only keep their first item"""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return number(value)
    if isinstance(value, Mapping):
        extracted = ""
        for key, item in value.items():
            if key == "amount":
                extracted += number(item or 0)
            elif key in ("unit", "date_time"):
                extracted += str(item or "")
        return extracted
    if isinstance(value, Sequence):
        if not value:
            return ""
        if len(value) > 1:
            logging.debug("ignoring %s trailing entity values", len(value) - 1)
        return extract_entity(value[0])
    return ""


def intent_result(query_result: Any) -> IntentResult:
    result = IntentResult()
    if query_result.intent:
        result.intent = query_result.intent.display_name
        result.confidence = float(query_result.intent_detection_confidence)
        result.fulfillment = query_result.fulfillment_text
    for name, value in (query_result.parameters or {}).items():
        result.entities[name] = extract_entity(value)
    return result


class DialogflowDetector:
    def __init__(self, credentials: Optional[str] = None) -> None:
        self.credentials = credentials or utils.get_secret(
            "DIALOGFLOW_CREDENTIALS_PATH"
        )
        self._client: Optional[dialogflow.SessionsAsyncClient] = None

    @property
    def client(self) -> dialogflow.SessionsAsyncClient:
        if not self._client:
            if self.credentials:
                self._client = dialogflow.SessionsAsyncClient.from_service_account_json(
                    self.credentials
                )
            else:
                self._client = dialogflow.SessionsAsyncClient()
        return self._client

    async def detect(
        self, project: str, session_key: str, utterance: str, language: str
    ) -> IntentResult:
        if not project or not session_key:
            raise UpstreamIntentError(
                f"Received empty project ({project}) or session ({session_key})"
            )
        session = f"projects/{project}/agent/sessions/{session_key}"
        text_input = dialogflow.TextInput(text=utterance, language_code=language)
        query_input = dialogflow.QueryInput(text=text_input)
        try:
            response = await self.client.detect_intent(
                request={"session": session, "query_input": query_input}
            )
        except (
            google_exceptions.GoogleAPIError,
            auth_exceptions.GoogleAuthError,
            OSError,
        ) as e:
            raise UpstreamIntentError(str(e)) from e
        return intent_result(response.query_result)
