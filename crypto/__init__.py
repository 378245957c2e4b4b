"""
Cryptographic module for end-to-end encrypted chat.

Implements the CipherChat protocol:
- P-256 ECDH key agreement
- HKDF-SHA256 session keys salted by the sorted public keys
- AES-256-GCM authenticated encryption
"""

from .primitives import (
    generate_keypair,
    export_public_key,
    import_public_key,
    encrypt_message,
    decrypt_message,
    Keypair,
    SessionKey,
    SealedMessage,
    CryptoError,
    KeyImportError,
    UntrustedKeyError,
    AuthenticationError,
    StateError,
    EntropyError
)
from .kdf import (
    derive_shared_secret,
    compute_agreement_salt,
    derive_session_key,
    agree_session_key
)
from .session import PeerSession, SessionState, SessionEvent, EventKind
from .registry import KeyRegistry, InMemoryKeyRegistry, HttpKeyRegistry, fingerprint

__all__ = [
    'generate_keypair',
    'export_public_key',
    'import_public_key',
    'encrypt_message',
    'decrypt_message',
    'Keypair',
    'SessionKey',
    'SealedMessage',
    'CryptoError',
    'KeyImportError',
    'UntrustedKeyError',
    'AuthenticationError',
    'StateError',
    'EntropyError',
    'derive_shared_secret',
    'compute_agreement_salt',
    'derive_session_key',
    'agree_session_key',
    'PeerSession',
    'SessionState',
    'SessionEvent',
    'EventKind',
    'KeyRegistry',
    'InMemoryKeyRegistry',
    'HttpKeyRegistry',
    'fingerprint'
]
