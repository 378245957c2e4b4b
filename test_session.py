"""
Tests for the peer session state machine.
"""

import pytest

from crypto.primitives import (
    AuthenticationError,
    KeyImportError,
    StateError,
    UntrustedKeyError,
)
from crypto.registry import InMemoryKeyRegistry
from crypto.session import EventKind, PeerSession, SessionState
from protocol.envelope import CipherEnvelope, b64encode, decode_envelope, encode_envelope


def _pair():
    left = PeerSession("left", "right")
    right = PeerSession("right", "left")
    return left, right


def _connect(left, right):
    right.handle(left.generate_keypair())
    left.handle(right.generate_keypair())


def test_end_to_end_hello():
    """left announces, right answers, both derive, hello gets through"""
    left, right = _pair()

    left_announcement = decode_envelope(encode_envelope(left.generate_keypair()))
    assert left_announcement.side == "left"

    # right hears left's key before it has a keypair of its own
    right.handle(left_announcement)
    assert right.state == SessionState.IDLE

    right_announcement = decode_envelope(encode_envelope(right.generate_keypair()))
    assert right.state == SessionState.SESSION_KEY_READY

    left.handle(right_announcement)
    assert left.state == SessionState.SESSION_KEY_READY
    assert left.session_key == right.session_key

    envelope = left.send("hello")
    assert envelope.kind == "cipher"
    assert envelope.sender == "left"
    assert envelope.target == "right"

    wire = decode_envelope(encode_envelope(envelope))
    assert right.handle(wire) == "hello"


def test_state_transitions():
    left, right = _pair()
    assert left.state == SessionState.IDLE

    left.generate_keypair()
    assert left.state == SessionState.KEYPAIR_READY

    left.announce()
    assert left.state == SessionState.AWAITING_PEER_KEY

    left.receive_peer_public_key(right.generate_keypair().public_key_bytes)
    assert left.state == SessionState.SESSION_KEY_READY

    # announcing again does not step back
    left.announce()
    assert left.state == SessionState.SESSION_KEY_READY


def test_send_before_key_is_state_error():
    left, right = _pair()
    with pytest.raises(StateError):
        left.send("too early")

    left.generate_keypair()
    with pytest.raises(StateError):
        left.send("still too early")


def test_announce_before_keypair_is_state_error():
    with pytest.raises(StateError):
        PeerSession("left", "right").announce()


def test_receive_before_key_is_state_error():
    left, right = _pair()
    _connect(left, right)
    envelope = left.send("hi")

    with pytest.raises(StateError):
        PeerSession("right", "left").receive(envelope)


def test_bad_peer_key_leaves_state_untouched():
    left, right = _pair()
    _connect(left, right)
    key_before = left.session_key

    with pytest.raises(KeyImportError):
        left.receive_peer_public_key(b"\x04" + b"\x01" * 64)

    assert left.state == SessionState.SESSION_KEY_READY
    assert left.session_key is key_before
    assert right.handle(left.send("still fine")) == "still fine"


def test_bad_peer_key_in_keypair_ready():
    left = PeerSession("left", "right")
    left.generate_keypair()

    with pytest.raises(KeyImportError):
        left.receive_peer_public_key(b"garbage")
    assert left.state == SessionState.KEYPAIR_READY


def test_decrypt_failure_keeps_session_usable():
    left, right = _pair()
    _connect(left, right)

    good = left.send("first")
    forged = CipherEnvelope(
        sender=good.sender, target=good.target, iv=good.iv,
        ciphertext=b64encode(b"\x00" * 21)
    )

    with pytest.raises(AuthenticationError):
        right.receive(forged)
    assert right.state == SessionState.SESSION_KEY_READY
    assert right.receive(good) == "first"
    assert right.handle(left.send("second")) == "second"


def test_relabelled_envelope_fails():
    """from/target are bound into the ciphertext"""
    left, right = _pair()
    _connect(left, right)

    envelope = left.send("for right only")
    relabelled = envelope.model_copy(update={"sender": "mallory"})

    with pytest.raises(AuthenticationError):
        right.receive(relabelled)


def test_handle_filters_envelopes():
    left, right = _pair()
    _connect(left, right)

    # own echo and third parties are ignored
    assert left.handle(left.announce()) is None
    stranger = PeerSession("carol", "left")
    stranger.generate_keypair()
    key_before = left.session_key
    assert left.handle(stranger.announce()) is None
    assert left.session_key is key_before

    # cipher for someone else is not attempted
    assert left.handle(left.send("to right")) is None
    assert left.handle(None) is None


def test_peer_key_rotation():
    left, right = _pair()
    _connect(left, right)
    old_key = left.session_key

    changed = left.receive_peer_public_key(right.generate_keypair().public_key_bytes)

    assert changed is True
    assert left.session_key != old_key
    assert left.session_key == right.session_key
    assert right.handle(left.send("after rotation")) == "after rotation"


def test_same_peer_key_reports_unchanged():
    left, right = _pair()
    _connect(left, right)

    assert left.receive_peer_public_key(right.public_key) is False


def test_own_key_rotation_rederives():
    left, right = _pair()
    _connect(left, right)

    right.handle(left.generate_keypair())

    assert left.state == SessionState.SESSION_KEY_READY
    assert left.session_key == right.session_key


def test_events_are_ordered():
    left, right = _pair()
    seen = []
    right.add_listener(lambda event: seen.append(event.kind))
    _connect(left, right)

    envelope = left.send("hello")
    right.handle(envelope)
    with pytest.raises(AuthenticationError):
        right.receive(envelope.model_copy(update={"ciphertext": b64encode(b"\x00" * 21)}))

    assert seen == [
        EventKind.KEY_READY,
        EventKind.PEER_KEY_RECEIVED,
        EventKind.MESSAGE_DECRYPTED,
        EventKind.DECRYPT_FAILED,
    ]
    assert [e.kind for e in right.events] == seen
    assert right.events[2].plaintext == "hello"


def test_registry_vouches_for_key():
    registry = InMemoryKeyRegistry()
    left = PeerSession("left", "right", registry=registry)
    right = PeerSession("right", "left")

    left.generate_keypair()
    announcement = right.generate_keypair()
    registry.register_key("right", announcement.public_key_bytes)

    left.handle(announcement)
    assert left.state == SessionState.SESSION_KEY_READY


def test_registry_rejects_substituted_key():
    registry = InMemoryKeyRegistry()
    left = PeerSession("left", "right", registry=registry)
    right = PeerSession("right", "left")
    mallory = PeerSession("right", "left")

    left.generate_keypair()
    registry.register_key("right", right.generate_keypair().public_key_bytes)

    with pytest.raises(UntrustedKeyError):
        left.handle(mallory.generate_keypair())
    assert left.state == SessionState.KEYPAIR_READY
    assert left.events[-1].kind == EventKind.PEER_KEY_REJECTED


def test_identity_and_peer_must_differ():
    with pytest.raises(ValueError):
        PeerSession("left", "left")


def test_any_names_work():
    sita = PeerSession("Sita", "Ram")
    ram = PeerSession("Ram", "Sita")
    _connect(sita, ram)

    assert ram.handle(sita.send("namaste")) == "namaste"
