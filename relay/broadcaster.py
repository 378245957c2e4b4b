"""
Fan-out broadcaster for opaque envelopes.

The broadcaster never looks past the ``kind`` field: it does not route on
``from``/``target`` and cannot read ciphertext. Each connection gets a
bounded outbox drained by its own task, so a slow recipient only delays
itself.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Optional, Protocol, Set, Union

from protocol.envelope import TransportParseError, read_frame

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """Transport the broadcaster can write text frames to"""

    async def send_text(self, data: str) -> None:
        ...


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class RelayConnection:
    """A registered client and its outbox"""

    def __init__(self, transport: Connection, label: str, outbox_size: int):
        self.transport = transport
        self.label = label
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=outbox_size)
        self.dropped = 0
        self.closed = False
        self._sender: Optional[asyncio.Task] = None

    def start(self):
        self._sender = asyncio.create_task(self._drain(), name=f"relay-send-{self.label}")

    def enqueue(self, text: str) -> bool:
        """Queue a frame without waiting; False if the outbox is full or closed"""
        if self.closed:
            return False
        try:
            self.outbox.put_nowait(text)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    async def _drain(self):
        while True:
            text = await self.outbox.get()
            try:
                await self.transport.send_text(text)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Send to %s failed, stopping its outbox: %s", self.label, e)
                self.closed = True
                self.outbox.task_done()
                self._discard_pending()
                return
            self.outbox.task_done()

    def _discard_pending(self):
        while not self.outbox.empty():
            self.outbox.get_nowait()
            self.outbox.task_done()

    def stop(self):
        self.closed = True
        if self._sender is not None:
            self._sender.cancel()
        self._discard_pending()

    def __repr__(self) -> str:
        return f"RelayConnection({self.label})"


class Broadcaster:
    """
    Registry of live connections plus the broadcast rule.

    Runs on a single event loop; the registry is only touched from that
    loop so it needs no lock.
    """

    def __init__(self, outbox_size: int = 256):
        self.outbox_size = outbox_size
        self.connections: Set[RelayConnection] = set()
        self._counter = 0

    def on_connect(self, transport: Connection, label: Optional[str] = None) -> RelayConnection:
        """Register a transport and start its sender task"""
        self._counter += 1
        connection = RelayConnection(transport, label or f"client-{self._counter}", self.outbox_size)
        self.connections.add(connection)
        connection.start()
        logger.info("%s connected (%d active)", connection.label, len(self.connections))
        return connection

    def on_message(self, connection: RelayConnection, raw: Union[str, bytes]) -> Optional[int]:
        """
        Relay a frame to every other connection.

        Returns:
            Number of recipients the frame was queued for, or None if the
            frame was discarded
        """
        try:
            data = read_frame(raw)
        except TransportParseError as e:
            logger.warning("Discarding frame from %s: %s", connection.label, e)
            return None

        if "timestamp" not in data:
            data["timestamp"] = utc_timestamp()

        logger.info("Relaying %s from %s -> %s", data["kind"],
                    data.get("from") or data.get("side") or "unknown",
                    data.get("target") or "broadcast")

        text = json.dumps(data)
        delivered = 0
        for other in list(self.connections):
            if other is connection:
                continue
            if other.enqueue(text):
                delivered += 1
            else:
                logger.warning("Outbox for %s is full or closed, dropping frame", other.label)
        return delivered

    def on_disconnect(self, connection: RelayConnection):
        """Forget a connection; frames already queued for others still go out"""
        self.connections.discard(connection)
        connection.stop()
        logger.info("%s disconnected (%d active)", connection.label, len(self.connections))

    async def flush(self):
        """Wait until every outbox is empty"""
        await asyncio.gather(*(c.outbox.join() for c in list(self.connections)))

    def close(self):
        for connection in list(self.connections):
            connection.stop()
        self.connections.clear()
