"""
Wire protocol shared by the relay and the peers.
"""

from .envelope import (
    PUBKEY,
    CIPHER,
    PubkeyEnvelope,
    CipherEnvelope,
    TransportParseError,
    read_frame,
    decode_envelope,
    encode_envelope,
)

__all__ = [
    'PUBKEY',
    'CIPHER',
    'PubkeyEnvelope',
    'CipherEnvelope',
    'TransportParseError',
    'read_frame',
    'decode_envelope',
    'encode_envelope'
]
