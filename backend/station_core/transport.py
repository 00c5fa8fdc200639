"""Transport capability consumed by the session: open/send/close plus receive and close callbacks."""
import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from station_core.messages import parse_message_type

LOG = logging.getLogger(__name__)

ReceiveCallback = Callable[[str], None]
CloseCallback = Callable[[], None]


def build_connection_url(connection_url: str, charge_point_id: str) -> str:
    """Build WebSocket URL: connection_url (normalized with trailing slash) + charge_point_id."""
    base = connection_url.rstrip("/")
    return f"{base}/{charge_point_id}"


def basic_auth_header(charge_point_id: str, password: str) -> dict[str, str]:
    """Authorization header for OCPP security profile 1: Basic base64(charge_point_id:password)."""
    credentials = base64.b64encode(f"{charge_point_id}:{password}".encode()).decode()
    return {"Authorization": f"Basic {credentials}"}


class Transport(ABC):
    """
    Bytes-on-wire boundary. open() reports success, send() must not block, and inbound
    frames / an unexpected close are reported through the handlers set by the session.
    """

    def __init__(self) -> None:
        self._on_receive: Optional[ReceiveCallback] = None
        self._on_close: Optional[CloseCallback] = None

    def set_handlers(self, on_receive: ReceiveCallback, on_close: CloseCallback) -> None:
        self._on_receive = on_receive
        self._on_close = on_close

    @abstractmethod
    async def open(self, address: str) -> bool:
        """Connect to address. Returns False if the connection could not be established."""

    @abstractmethod
    def send(self, message: str) -> None:
        """Queue one frame for sending."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Does not invoke the close handler."""

    def _deliver(self, message: str) -> None:
        if self._on_receive is not None:
            self._on_receive(message)

    def _closed_by_peer(self) -> None:
        if self._on_close is not None:
            self._on_close()


class WebSocketTransport(Transport):
    """OCPP-J over a websockets client connection (subprotocol ocpp1.6)."""

    def __init__(
        self,
        *,
        additional_headers: Optional[dict[str, str]] = None,
        ping_interval: float = 20,
        ping_timeout: float = 10,
        close_timeout: float = 5,
    ) -> None:
        super().__init__()
        self._connect_kw: dict[str, Any] = {
            "subprotocols": ["ocpp1.6"],
            "ping_interval": ping_interval,
            "ping_timeout": ping_timeout,
            "close_timeout": close_timeout,
        }
        if additional_headers is not None:
            self._connect_kw["additional_headers"] = additional_headers
        self._ws: Any = None
        self._outbox: Optional[asyncio.Queue] = None
        self._reader: Optional[asyncio.Task] = None
        self._writer: Optional[asyncio.Task] = None
        self._closing = False

    async def open(self, address: str) -> bool:
        self._closing = False
        try:
            self._ws = await websockets.connect(address, **self._connect_kw)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            LOG.warning("Connect to %s failed: %s", address, e)
            return False
        self._outbox = asyncio.Queue()
        self._reader = asyncio.create_task(self._read_loop())
        self._writer = asyncio.create_task(self._write_loop())
        return True

    def send(self, message: str) -> None:
        if self._outbox is None:
            LOG.warning("Dropping frame, transport not open: %r", message)
            return
        self._outbox.put_nowait(message)

    async def close(self) -> None:
        self._closing = True
        for task in (self._reader, self._writer):
            if task is not None:
                task.cancel()
        self._reader = self._writer = None
        self._outbox = None
        if self._ws is not None:
            try:
                await self._ws.close(code=1000, reason="")
            except WebSocketException as e:
                LOG.debug("Close failed: %s", e)
            self._ws = None

    async def _read_loop(self) -> None:
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    message = message.decode()
                LOG.info("OCPP incoming %s (%d bytes): %r", parse_message_type(message), len(message), message)
                self._deliver(message)
        except ConnectionClosed as e:
            LOG.warning("Connection closed: %s", e)
        finally:
            if not self._closing:
                self._closed_by_peer()

    async def _write_loop(self) -> None:
        assert self._outbox is not None
        outbox = self._outbox
        while True:
            message = await outbox.get()
            LOG.info("OCPP outgoing %s (%d bytes): %r", parse_message_type(message), len(message), message)
            try:
                await self._ws.send(message)
            except ConnectionClosed as e:
                LOG.warning("Send failed, connection closed: %s", e)
                return
