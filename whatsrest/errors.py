#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
Error taxonomy for whatsrest.

Transport errors are typed at the transport boundary. The bridge process only
gives us text, so `transport_error` is the one place where that text is matched;
everything above it catches the typed exceptions.
"""
import enum


class Outcome(enum.Enum):
    ALREADY_AUTHENTICATED = "already authenticated"
    SESSION_INVALIDATED = "session invalidated"
    SEND_TIMED_OUT = "send timed out"
    UNCLASSIFIED = "unclassified"


# these have to match the bridge's messages exactly
ALREADY_LOGGED_IN = "already logged in"
WEBSOCKET_CLOSE_SENT = (
    "could not send proto: failed to write message: "
    "error writing to websocket: websocket: close sent"
)
SENDING_TIMED_OUT = "sending message timed out"
SCAN_TIMED_OUT = "qr code scan timed out"

PHRASES = {
    ALREADY_LOGGED_IN: Outcome.ALREADY_AUTHENTICATED,
    WEBSOCKET_CLOSE_SENT: Outcome.SESSION_INVALIDATED,
    SENDING_TIMED_OUT: Outcome.SEND_TIMED_OUT,
}


def classify(text: str) -> Outcome:
    "map transport error text onto what we should do about it"
    return PHRASES.get(text.lower(), Outcome.UNCLASSIFIED)


class TransportError(Exception):
    "an error reported by the transport that we don't know how to handle"


class AlreadyLoggedIn(TransportError):
    pass


class ConnectionClosed(TransportError):
    pass


class SendTimedOut(TransportError):
    pass


TYPED = {
    Outcome.ALREADY_AUTHENTICATED: AlreadyLoggedIn,
    Outcome.SESSION_INVALIDATED: ConnectionClosed,
    Outcome.SEND_TIMED_OUT: SendTimedOut,
    Outcome.UNCLASSIFIED: TransportError,
}


def transport_error(text: str) -> TransportError:
    """Build the typed exception for a transport error message.
    The bridge's text is always kept as the exception message."""
    return TYPED[classify(text)](text)


class WhatsRestError(Exception):
    status = 500
    default_message = "internal server error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.default_message)


class InputValidationError(WhatsRestError):
    status = 400
    default_message = "invalid request"


class AuthorizationError(WhatsRestError):
    status = 401
    default_message = "invalid authorization"


class ConnectionAbsentError(WhatsRestError):
    status = 400
    default_message = "connection is invalid"


class ConnectionInvalidError(WhatsRestError):
    status = 400
    default_message = "connection is invalid"


class TimeoutExceededError(WhatsRestError):
    status = 504
    default_message = "qr code generate timed out"


class TransportFailure(WhatsRestError):
    "unclassified transport error, message passed through verbatim"


class PersistenceError(WhatsRestError):
    default_message = "could not persist session"


class UpstreamIntentError(WhatsRestError):
    status = 502
    default_message = "intent detection failed"


class UpstreamWebhookError(WhatsRestError):
    status = 502
    default_message = "webhook delivery failed"


class LoginInProgressError(WhatsRestError):
    status = 409
    default_message = "login already in progress"
