"""
Peer Session

Per-identity state machine that ties key agreement, session key derivation
and AEAD to the wire envelopes:

    IDLE -> KEYPAIR_READY -> AWAITING_PEER_KEY -> SESSION_KEY_READY

A session owns at most one keypair and one session key. Replacing either
re-derives the session key from scratch.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Union

from cryptography.hazmat.primitives.asymmetric import ec

from protocol.envelope import CipherEnvelope, PubkeyEnvelope

from .kdf import PROTOCOL_LABEL, compute_agreement_salt, derive_session_key, derive_shared_secret
from .primitives import (
    AuthenticationError,
    CryptoError,
    KeyImportError,
    Keypair,
    SessionKey,
    StateError,
    UntrustedKeyError,
    decrypt_message,
    encrypt_message,
    export_public_key,
    generate_keypair,
    import_public_key,
)
from .registry import KeyRegistry

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    KEYPAIR_READY = "keypair_ready"
    AWAITING_PEER_KEY = "awaiting_peer_key"
    SESSION_KEY_READY = "session_key_ready"


class EventKind(str, Enum):
    KEY_READY = "key_ready"
    PEER_KEY_RECEIVED = "peer_key_received"
    PEER_KEY_REJECTED = "peer_key_rejected"
    MESSAGE_DECRYPTED = "message_decrypted"
    DECRYPT_FAILED = "decrypt_failed"


@dataclass
class SessionEvent:
    """
    Something a presentation layer may want to show.

    Attributes:
        kind: What happened
        peer: The other side of the session
        plaintext: Decrypted text for MESSAGE_DECRYPTED
        error: The error for PEER_KEY_REJECTED and DECRYPT_FAILED
        key_check: Session key check value once a key is derived
    """
    kind: EventKind
    peer: str
    plaintext: Optional[str] = None
    error: Optional[CryptoError] = None
    key_check: Optional[str] = None


@dataclass
class PeerState:
    """
    Key material held by one side of a session.

    Attributes:
        keypair: Our current keypair
        public_bytes: Our exported public key
        peer_public_bytes: Last accepted peer public key
        peer_public: The same key as a curve point
        session_key: Key derived from the two
        events: Every event emitted so far, oldest first
    """
    keypair: Optional[Keypair] = None
    public_bytes: Optional[bytes] = None
    peer_public_bytes: Optional[bytes] = None
    peer_public: Optional[ec.EllipticCurvePublicKey] = None
    session_key: Optional[SessionKey] = None
    events: List[SessionEvent] = field(default_factory=list)


Listener = Callable[[SessionEvent], None]


class PeerSession:
    """
    One identity's end of a two-party encrypted conversation.

    The identity and peer labels are plain configuration; any two names
    work. If a registry is given, a peer key is only accepted when the
    registry vouches for it.
    """

    def __init__(self, identity: str, peer: str,
                 registry: Optional[KeyRegistry] = None,
                 context_label: bytes = PROTOCOL_LABEL):
        """
        Args:
            identity: Our name on the wire
            peer: The name of the other party
            registry: Optional key registry consulted before deriving
            context_label: HKDF info string bound into the session key
        """
        if identity == peer:
            raise ValueError("identity and peer must differ")
        self.identity = identity
        self.peer = peer
        self.registry = registry
        self.context_label = context_label
        self.state = SessionState.IDLE
        self._keys = PeerState()
        self._listeners: List[Listener] = []
        self._lock = threading.RLock()

    @property
    def events(self) -> List[SessionEvent]:
        return list(self._keys.events)

    @property
    def public_key(self) -> Optional[bytes]:
        return self._keys.public_bytes

    @property
    def session_key(self) -> Optional[SessionKey]:
        return self._keys.session_key

    def add_listener(self, listener: Listener):
        """Subscribe to session events in the order they happen"""
        self._listeners.append(listener)

    def _emit(self, kind: EventKind, **details) -> SessionEvent:
        event = SessionEvent(kind=kind, peer=self.peer, **details)
        self._keys.events.append(event)
        for listener in self._listeners:
            listener(event)
        return event

    def generate_keypair(self) -> PubkeyEnvelope:
        """
        Create (or rotate) our keypair.

        If a peer key is already known the session key is derived right away.

        Returns:
            Envelope announcing our public key
        """
        with self._lock:
            keypair = generate_keypair()
            self._keys.keypair = keypair
            self._keys.public_bytes = export_public_key(keypair)
            self._keys.session_key = None
            self.state = SessionState.KEYPAIR_READY
            logger.debug("%s generated a keypair", self.identity)
            self._emit(EventKind.KEY_READY)

            if self._keys.peer_public is not None:
                self._derive()

            return PubkeyEnvelope.create(self.identity, self._keys.public_bytes)

    def announce(self) -> PubkeyEnvelope:
        """
        Envelope carrying our public key for broadcast.

        Raises:
            StateError: If no keypair exists yet
        """
        with self._lock:
            if self._keys.keypair is None:
                raise StateError("Generate a keypair before announcing it")
            if self.state == SessionState.KEYPAIR_READY:
                self.state = SessionState.AWAITING_PEER_KEY
            return PubkeyEnvelope.create(self.identity, self._keys.public_bytes)

    def receive_peer_public_key(self, key_bytes: bytes) -> bool:
        """
        Accept the peer's public key and derive the session key.

        Import, verification and derivation happen as one step; on failure
        the previous state and key are left untouched.

        Returns:
            True if the peer key differs from the one we had

        Raises:
            KeyImportError: If the key bytes are invalid
            UntrustedKeyError: If the registry does not vouch for the key
        """
        with self._lock:
            try:
                peer_public = import_public_key(key_bytes)
                if self.registry is not None and not self.registry.verify(bytes(key_bytes), self.peer):
                    raise UntrustedKeyError(f"Registry does not vouch for {self.peer}'s key")
            except KeyImportError as e:
                logger.warning("Rejected public key from %s: %s", self.peer, e)
                self._emit(EventKind.PEER_KEY_REJECTED, error=e)
                raise

            changed = self._keys.peer_public_bytes != bytes(key_bytes)
            self._keys.peer_public = peer_public
            self._keys.peer_public_bytes = bytes(key_bytes)

            if self._keys.keypair is None:
                logger.debug("%s holding %s's key until a keypair exists", self.identity, self.peer)
                return changed

            self._derive()
            return changed

    def _derive(self):
        shared_secret = derive_shared_secret(self._keys.keypair.private_key, self._keys.peer_public)
        salt = compute_agreement_salt(self._keys.public_bytes, self._keys.peer_public_bytes)
        self._keys.session_key = derive_session_key(shared_secret, salt, self.context_label)
        self.state = SessionState.SESSION_KEY_READY
        logger.info("%s derived session key %s with %s",
                    self.identity, self._keys.session_key.check_value, self.peer)
        self._emit(EventKind.PEER_KEY_RECEIVED, key_check=self._keys.session_key.check_value)

    def _require_key(self) -> SessionKey:
        key = self._keys.session_key
        if self.state != SessionState.SESSION_KEY_READY or key is None:
            raise StateError(f"No session key with {self.peer} yet")
        return key

    @staticmethod
    def associated_data(sender: str, target: str) -> bytes:
        """AAD binding a ciphertext to its sender and recipient"""
        return f"{sender}\x00{target}".encode()

    def send(self, plaintext: str) -> CipherEnvelope:
        """
        Encrypt a message for the peer.

        Returns:
            Cipher envelope to hand to the transport

        Raises:
            StateError: If no session key has been derived
        """
        with self._lock:
            key = self._require_key()
        sealed = encrypt_message(key, plaintext.encode("utf-8"),
                                 self.associated_data(self.identity, self.peer))
        return CipherEnvelope.create(self.identity, self.peer, sealed.iv, sealed.ciphertext)

    def receive(self, envelope: CipherEnvelope) -> str:
        """
        Decrypt a message from the peer.

        A failed message is reported and dropped; the session stays usable.

        Raises:
            StateError: If no session key has been derived
            AuthenticationError: If the message does not verify
        """
        with self._lock:
            key = self._require_key()
        try:
            plaintext = decrypt_message(
                key,
                envelope.iv_bytes,
                envelope.ciphertext_bytes,
                self.associated_data(envelope.sender, envelope.target)
            ).decode("utf-8")
        except UnicodeDecodeError as e:
            error = AuthenticationError(f"Decrypted payload is not UTF-8: {e}")
            self._emit(EventKind.DECRYPT_FAILED, error=error)
            raise error from e
        except AuthenticationError as e:
            logger.warning("%s failed to decrypt message from %s", self.identity, envelope.sender)
            self._emit(EventKind.DECRYPT_FAILED, error=e)
            raise

        self._emit(EventKind.MESSAGE_DECRYPTED, plaintext=plaintext)
        return plaintext

    def handle(self, envelope: Optional[Union[PubkeyEnvelope, CipherEnvelope]]) -> Optional[str]:
        """
        Route an incoming envelope.

        Returns:
            Decrypted plaintext for a cipher addressed to us, otherwise None
        """
        if isinstance(envelope, PubkeyEnvelope):
            if envelope.side == self.peer:
                self.receive_peer_public_key(envelope.public_key_bytes)
            return None
        if isinstance(envelope, CipherEnvelope):
            if envelope.target == self.identity and envelope.sender == self.peer:
                return self.receive(envelope)
            return None
        return None
