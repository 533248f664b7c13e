import asyncio
import os
from typing import Callable, Optional

os.environ["ENV"] = "test"

from whatsrest.dialog import IntentResult
from whatsrest.errors import transport_error
from whatsrest.message import InboundMessage
from whatsrest.transport import Connection

ACCOUNT = "6281234567890"
USER = "6289876543210"


class FakeConnection(Connection):
    """A connection that never touches the network. Set the *_error attributes
    to make the matching call fail, and `scanned` to hold a login open"""

    def __init__(self, account_id: str, timeout: float = 1.0) -> None:
        super().__init__(account_id, timeout)
        self.qr_payload: Optional[str] = "2@qr-payload,from,the,network"
        self.session = b"fresh-session\x00\xff"
        self.scanned: Optional[asyncio.Event] = None
        self.login_error: Optional[Exception] = None
        self.restore_error: Optional[Exception] = None
        self.send_error: Optional[Exception] = None
        self.presence_error: Optional[Exception] = None
        self.logout_error: Optional[Exception] = None
        self.media: dict[str, bytes] = {}
        self.calls: list[str] = []
        self.sent: list[tuple] = []
        self.restored_with: Optional[bytes] = None
        self.closed = False

    async def login(self, qr: "asyncio.Future[str]") -> bytes:
        self.calls.append("login")
        if self.qr_payload is not None and not qr.done():
            qr.set_result(self.qr_payload)
        await asyncio.sleep(0)
        if self.scanned:
            await self.scanned.wait()
        if self.login_error:
            raise self.login_error
        return self.session

    async def restore(self, session: bytes) -> bytes:
        self.calls.append("restore")
        self.restored_with = session
        if self.restore_error:
            raise self.restore_error
        return self.session

    async def send_text(self, to: str, text: str) -> None:
        self.calls.append("send")
        if self.send_error:
            raise self.send_error
        self.sent.append((to, text))

    async def send_attachment(
        self, to: str, data: bytes, mimetype: str, caption: str = ""
    ) -> None:
        self.calls.append("send")
        if self.send_error:
            raise self.send_error
        self.sent.append((to, data, mimetype, caption))

    async def presence(self, to: str, state: str) -> None:
        self.calls.append(f"presence:{state}")
        if self.presence_error:
            raise self.presence_error

    async def logout(self) -> None:
        self.calls.append("logout")
        if self.logout_error:
            raise self.logout_error

    async def download(self, message: InboundMessage) -> bytes:
        if message.id not in self.media:
            raise transport_error("media not found")
        return self.media[message.id]

    async def close(self) -> None:
        self.closed = True


class FakeNetwork:
    """Connection factory that remembers what it handed out"""

    def __init__(self, configure: Optional[Callable[[FakeConnection], None]] = None) -> None:
        self.configure = configure
        self.connections: list[FakeConnection] = []

    async def open(self, account_id: str, timeout: float) -> FakeConnection:
        # give concurrent callers a chance to interleave
        await asyncio.sleep(0)
        conn = FakeConnection(account_id, timeout)
        if self.configure:
            self.configure(conn)
        self.connections.append(conn)
        return conn

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]


class CountingDetector:
    """Understanding service double that counts how often it was asked"""

    def __init__(
        self, result: Optional[IntentResult] = None, error: Optional[Exception] = None
    ) -> None:
        self.result = result or IntentResult(
            intent="greeting",
            confidence=0.87,
            entities={"name": "Budi"},
            fulfillment="Hi there!",
        )
        self.error = error
        self.calls: list[tuple[str, str, str, str]] = []

    async def detect(
        self, project: str, session_key: str, utterance: str, language: str
    ) -> IntentResult:
        self.calls.append((project, session_key, utterance, language))
        if self.error:
            raise self.error
        return self.result


def text_message(text: str, from_me: bool = False, sender: str = USER) -> InboundMessage:
    return InboundMessage(
        {
            "kind": "text",
            "info": {
                "id": "3EB0C431C26A1916E07A",
                "remoteJid": f"{sender}@s.whatsapp.net",
                "fromMe": from_me,
                "timestamp": 1573206620,
            },
            "text": text,
        }
    )


def image_message(caption: str, message_id: str = "3EB0D8F5A2F1", from_me: bool = False) -> InboundMessage:
    return InboundMessage(
        {
            "kind": "image",
            "info": {
                "id": message_id,
                "remoteJid": f"{USER}@s.whatsapp.net",
                "fromMe": from_me,
                "timestamp": 1573206620,
            },
            "caption": caption,
            "type": "image/jpeg",
        }
    )
