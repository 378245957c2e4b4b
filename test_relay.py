"""
Tests for the relay broadcaster and WebSocket endpoint.
"""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from crypto.session import PeerSession
from protocol.envelope import decode_envelope, encode_envelope
from relay.broadcaster import Broadcaster
from relay.main import create_app

CIPHER_FRAME = {
    "kind": "cipher", "from": "left", "target": "right",
    "iv": "AAAAAAAAAAAAAAAA", "ciphertext": "c2VjcmV0",
    "timestamp": "2026-01-01T00:00:00.000Z",
}


class FakeConnection:
    def __init__(self):
        self.sent = []

    async def send_text(self, data):
        self.sent.append(data)


class FailingConnection:
    async def send_text(self, data):
        raise ConnectionError("peer went away")


class StalledConnection:
    async def send_text(self, data):
        await asyncio.sleep(3600)


def test_fan_out_excludes_sender():
    """A's frame reaches B and C verbatim and never echoes to A"""
    async def scenario():
        broadcaster = Broadcaster()
        a, b, c = FakeConnection(), FakeConnection(), FakeConnection()
        conn_a = broadcaster.on_connect(a, "A")
        broadcaster.on_connect(b, "B")
        broadcaster.on_connect(c, "C")

        count = broadcaster.on_message(conn_a, json.dumps(CIPHER_FRAME))
        await broadcaster.flush()
        broadcaster.close()
        return count, a, b, c

    count, a, b, c = asyncio.run(scenario())

    assert count == 2
    assert a.sent == []
    assert [json.loads(m) for m in b.sent] == [CIPHER_FRAME]
    assert [json.loads(m) for m in c.sent] == [CIPHER_FRAME]


def test_timestamp_added_when_missing():
    async def scenario():
        broadcaster = Broadcaster()
        sender, receiver = FakeConnection(), FakeConnection()
        conn = broadcaster.on_connect(sender)
        broadcaster.on_connect(receiver)

        broadcaster.on_message(conn, '{"kind": "pubkey", "side": "left", "publicKey": "AAAA"}')
        await broadcaster.flush()
        broadcaster.close()
        return receiver

    receiver = asyncio.run(scenario())
    data = json.loads(receiver.sent[0])

    assert data["kind"] == "pubkey"
    assert data["timestamp"].endswith("Z")


def test_existing_timestamp_is_kept():
    """Only frames without a timestamp get one, even if the existing value is falsy"""
    async def scenario():
        broadcaster = Broadcaster()
        sender, receiver = FakeConnection(), FakeConnection()
        conn = broadcaster.on_connect(sender)
        broadcaster.on_connect(receiver)

        broadcaster.on_message(conn, '{"kind": "hello", "timestamp": ""}')
        broadcaster.on_message(conn, '{"kind": "hello", "timestamp": 0}')
        await broadcaster.flush()
        broadcaster.close()
        return receiver

    receiver = asyncio.run(scenario())

    assert [json.loads(m)["timestamp"] for m in receiver.sent] == ["", 0]


@pytest.mark.parametrize("garbage", [
    "not json at all",
    b"\x00\x01\x02",
    "[]",
    '{"from": "left"}',
    '{"kind": null}',
    '{"kind": "x", "n": ' + "1" * 5000 + '}',
    "[" * 200000,
])
def test_garbage_is_discarded(garbage):
    """Unparseable frames are dropped without touching anyone"""
    async def scenario():
        broadcaster = Broadcaster()
        sender, other = FakeConnection(), FakeConnection()
        conn = broadcaster.on_connect(sender)
        broadcaster.on_connect(other)

        result = broadcaster.on_message(conn, garbage)
        broadcaster.on_message(conn, json.dumps(CIPHER_FRAME))
        await broadcaster.flush()
        active = len(broadcaster.connections)
        broadcaster.close()
        return result, active, sender, other

    result, active, sender, other = asyncio.run(scenario())

    assert result is None
    assert active == 2
    assert sender.sent == []
    assert [json.loads(m) for m in other.sent] == [CIPHER_FRAME]


def test_unknown_kinds_are_relayed():
    async def scenario():
        broadcaster = Broadcaster()
        sender, other = FakeConnection(), FakeConnection()
        conn = broadcaster.on_connect(sender)
        broadcaster.on_connect(other)
        count = broadcaster.on_message(conn, '{"kind": "hello", "name": "left"}')
        await broadcaster.flush()
        broadcaster.close()
        return count, other

    count, other = asyncio.run(scenario())
    assert count == 1
    assert json.loads(other.sent[0])["name"] == "left"


def test_failing_recipient_does_not_affect_others():
    async def scenario():
        broadcaster = Broadcaster()
        sender, healthy = FakeConnection(), FakeConnection()
        conn = broadcaster.on_connect(sender)
        broken = broadcaster.on_connect(FailingConnection(), "broken")
        broadcaster.on_connect(healthy)

        broadcaster.on_message(conn, json.dumps(CIPHER_FRAME))
        await broadcaster.flush()
        broadcaster.on_message(conn, json.dumps(CIPHER_FRAME))
        await broadcaster.flush()
        closed = broken.closed
        broadcaster.close()
        return closed, healthy

    closed, healthy = asyncio.run(scenario())
    assert closed is True
    assert len(healthy.sent) == 2


def test_stalled_recipient_does_not_block_broadcast():
    """A recipient that never finishes a send only loses its own frames"""
    async def scenario():
        broadcaster = Broadcaster(outbox_size=1)
        sender, fast = FakeConnection(), FakeConnection()
        conn = broadcaster.on_connect(sender)
        stalled = broadcaster.on_connect(StalledConnection(), "stalled")
        fast_conn = broadcaster.on_connect(fast)

        for _ in range(4):
            broadcaster.on_message(conn, json.dumps(CIPHER_FRAME))
            await asyncio.sleep(0)
        await asyncio.wait_for(fast_conn.outbox.join(), timeout=5)
        dropped = stalled.dropped
        broadcaster.close()
        return dropped, fast

    dropped, fast = asyncio.run(scenario())
    # stalled holds one frame in flight and one queued, the rest are dropped
    assert len(fast.sent) == 4
    assert dropped == 2


def test_disconnect_removes_connection():
    async def scenario():
        broadcaster = Broadcaster()
        a, b = FakeConnection(), FakeConnection()
        conn_a = broadcaster.on_connect(a)
        conn_b = broadcaster.on_connect(b)

        broadcaster.on_disconnect(conn_b)
        count = broadcaster.on_message(conn_a, json.dumps(CIPHER_FRAME))
        await broadcaster.flush()
        broadcaster.close()
        return count, b

    count, b = asyncio.run(scenario())
    assert count == 0
    assert b.sent == []


@pytest.fixture
def client(tmp_path):
    app = create_app(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'registry.db'}",
        secret_key="test-secret"
    )
    with TestClient(app) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "connections": 0}


def test_websocket_relay_no_echo(client):
    with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
        a.send_text(json.dumps(CIPHER_FRAME))
        assert b.receive_json() == CIPHER_FRAME

        reply = dict(CIPHER_FRAME, **{"from": "right", "target": "left"})
        b.send_text(json.dumps(reply))
        # a's next frame is b's reply, not its own message
        assert a.receive_json() == reply


def test_websocket_survives_garbage(client):
    with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
        a.send_text("definitely not json")
        a.send_bytes(b"\xff\x00")
        a.send_text('{"kind": "x", "n": ' + "1" * 5000 + "}")
        a.send_text("[" * 200000)
        a.send_text(json.dumps(CIPHER_FRAME))

        assert b.receive_json() == CIPHER_FRAME


def test_end_to_end_through_relay(client):
    """left and right agree on a key and exchange hello via the relay"""
    left = PeerSession("left", "right")
    right = PeerSession("right", "left")

    with client.websocket_connect("/ws") as left_ws, client.websocket_connect("/ws") as right_ws:
        left.generate_keypair()
        left_ws.send_text(encode_envelope(left.announce()))
        right.handle(decode_envelope(right_ws.receive_text()))

        right.generate_keypair()
        right_ws.send_text(encode_envelope(right.announce()))
        left.handle(decode_envelope(left_ws.receive_text()))

        assert left.session_key == right.session_key

        left_ws.send_text(encode_envelope(left.send("hello")))
        frame = right_ws.receive_json()

        assert frame["kind"] == "cipher"
        assert frame["from"] == "left"
        assert frame["target"] == "right"
        assert "hello" not in json.dumps(frame)
        assert right.handle(decode_envelope(frame)) == "hello"
