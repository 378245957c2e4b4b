"""
Session Key Derivation

Turns our private key and a peer's public key into a symmetric session key
without any negotiation beyond exchanging public keys:

    shared = ECDH(our_private, peer_public)
    salt   = SHA-256(min(pub_a, pub_b) || max(pub_a, pub_b))
    key    = HKDF-SHA256(shared, salt, info=PROTOCOL_LABEL)

The salt depends only on the two public key byte strings, so both sides
compute the same one whoever initiated.
"""

import hashlib
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .primitives import (
    Keypair,
    SessionKey,
    export_public_key,
    import_public_key,
)


PROTOCOL_LABEL = b"CipherChat AES-GCM key"
SESSION_KEY_LENGTH = 32


def derive_shared_secret(private_key: ec.EllipticCurvePrivateKey,
                         public_key: ec.EllipticCurvePublicKey) -> bytes:
    """
    Perform elliptic-curve Diffie-Hellman.

    Args:
        private_key: Our private key
        public_key: Their public key

    Returns:
        32-byte shared secret
    """
    return private_key.exchange(ec.ECDH(), public_key)


def compute_agreement_salt(my_public: bytes, peer_public: bytes) -> bytes:
    """
    Hash the two public keys in byte-lexicographic order.

    Returns:
        32-byte salt, identical for (a, b) and (b, a)
    """
    low, high = sorted((bytes(my_public), bytes(peer_public)))
    return hashlib.sha256(low + high).digest()


def derive_session_key(shared_secret: bytes, salt: bytes,
                       context_label: bytes = PROTOCOL_LABEL) -> SessionKey:
    """
    HKDF extract-then-expand over the shared secret.

    Args:
        shared_secret: ECDH output
        salt: Agreement salt from compute_agreement_salt
        context_label: Protocol-identifying info string

    Returns:
        Non-exportable 256-bit SessionKey
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=SESSION_KEY_LENGTH,
        salt=salt,
        info=context_label
    )
    return SessionKey(hkdf.derive(shared_secret))


def agree_session_key(keypair: Keypair, peer_public_bytes: bytes,
                      context_label: bytes = PROTOCOL_LABEL) -> SessionKey:
    """
    Run the whole agreement against a peer's raw public key.

    Raises:
        KeyImportError: If the peer key bytes are invalid
    """
    peer_public = import_public_key(peer_public_bytes)
    shared_secret = derive_shared_secret(keypair.private_key, peer_public)
    salt = compute_agreement_salt(export_public_key(keypair), peer_public_bytes)
    return derive_session_key(shared_secret, salt, context_label)
