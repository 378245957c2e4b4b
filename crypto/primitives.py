"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational operations used by the CipherChat
protocol: P-256 keypairs, their raw wire encoding, secure randomness, and
AES-256-GCM authenticated encryption.
"""

import os
import hmac
import hashlib
from dataclasses import dataclass
from typing import Optional, Union
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


CURVE = ec.SECP256R1()
PUBLIC_KEY_LENGTH = 65  # 0x04 || X (32) || Y (32)
IV_LENGTH = 12
TAG_LENGTH = 16


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class KeyImportError(CryptoError):
    """Public key bytes are malformed or not a point on the curve"""
    pass


class UntrustedKeyError(KeyImportError):
    """Public key is well formed but failed registry verification"""
    pass


class AuthenticationError(CryptoError):
    """AEAD tag verification failed"""
    pass


class StateError(CryptoError):
    """Operation invoked before the session reached the required state"""
    pass


class EntropyError(CryptoError):
    """Secure randomness is unavailable"""
    pass


@dataclass(frozen=True)
class Keypair:
    """
    An ECDH keypair on P-256.

    Attributes:
        private_key: Our private key (never serialized)
        public_key: The matching public key
    """
    private_key: ec.EllipticCurvePrivateKey
    public_key: ec.EllipticCurvePublicKey

    def __repr__(self) -> str:
        return f"Keypair(public_key={export_public_key(self.public_key).hex()[:16]}...)"


class SessionKey:
    """
    A 256-bit AES-GCM session key.

    The raw key bytes are handed to the cipher at construction and not kept
    on this object; the key cannot be pickled and its repr is redacted. Two
    keys compare equal when their one-way check values match.
    """

    __slots__ = ("_aesgcm", "_check_value")

    def __init__(self, key_material: bytes):
        if len(key_material) != 32:
            raise ValueError("Session key must be 32 bytes")
        self._aesgcm = AESGCM(bytes(key_material))
        self._check_value = hashlib.sha256(b"CipherChat key check" + key_material).digest()[:8]

    @property
    def check_value(self) -> str:
        """Short hex identifier safe to display or log"""
        return self._check_value.hex()

    def __eq__(self, other) -> bool:
        if not isinstance(other, SessionKey):
            return NotImplemented
        return hmac.compare_digest(self._check_value, other._check_value)

    def __hash__(self) -> int:
        return hash(self._check_value)

    def __repr__(self) -> str:
        return f"SessionKey(check_value={self.check_value})"

    def __reduce__(self):
        raise TypeError("SessionKey is not exportable")


def _cipher_for(key: Union[SessionKey, bytes]) -> AESGCM:
    if isinstance(key, SessionKey):
        return key._aesgcm
    return AESGCM(key)


@dataclass(frozen=True)
class SealedMessage:
    """
    Output of AEAD encryption.

    Attributes:
        iv: 12-byte random nonce
        ciphertext: Encrypted payload with the 16-byte tag appended
    """
    iv: bytes
    ciphertext: bytes


def random_bytes(length: int) -> bytes:
    """
    Draw bytes from the operating system CSPRNG.

    Raises:
        EntropyError: If no secure randomness source is available
    """
    try:
        return os.urandom(length)
    except NotImplementedError as e:
        raise EntropyError(f"Secure randomness unavailable: {e}") from e


def generate_keypair() -> Keypair:
    """
    Generate a P-256 Diffie-Hellman keypair for key agreement.

    Returns:
        Keypair with private and public key

    Raises:
        EntropyError: If the platform RNG cannot be used
    """
    try:
        private_key = ec.generate_private_key(CURVE)
    except NotImplementedError as e:
        raise EntropyError(f"Key generation failed: {e}") from e
    return Keypair(private_key=private_key, public_key=private_key.public_key())


def export_public_key(key: Union[Keypair, ec.EllipticCurvePublicKey]) -> bytes:
    """Serialize a public key (or a keypair's public half) to 65 raw bytes"""
    if isinstance(key, Keypair):
        key = key.public_key
    return key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint
    )


def import_public_key(key_bytes: bytes) -> ec.EllipticCurvePublicKey:
    """
    Deserialize raw bytes to a P-256 public key.

    Args:
        key_bytes: Uncompressed SEC1 point

    Returns:
        Public key object

    Raises:
        KeyImportError: If the bytes are not a valid uncompressed P-256 point
    """
    if not isinstance(key_bytes, (bytes, bytearray)):
        raise KeyImportError(f"Public key must be bytes, got {type(key_bytes).__name__}")
    if len(key_bytes) != PUBLIC_KEY_LENGTH:
        raise KeyImportError(
            f"Public key must be {PUBLIC_KEY_LENGTH} bytes, got {len(key_bytes)}"
        )
    if key_bytes[0] != 0x04:
        raise KeyImportError("Public key must be an uncompressed point")

    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, bytes(key_bytes))
    except ValueError as e:
        raise KeyImportError(f"Invalid curve point: {e}") from e


def encrypt_message(key: Union[SessionKey, bytes], plaintext: bytes,
                    associated_data: Optional[bytes] = None) -> SealedMessage:
    """
    Encrypt a message using AES-256-GCM.

    Args:
        key: Session key (or 32 raw key bytes)
        plaintext: Message to encrypt
        associated_data: Additional authenticated data

    Returns:
        SealedMessage with a fresh nonce and ciphertext + tag
    """
    nonce = random_bytes(IV_LENGTH)
    ciphertext = _cipher_for(key).encrypt(nonce, plaintext, associated_data)
    return SealedMessage(iv=nonce, ciphertext=ciphertext)


def decrypt_message(key: Union[SessionKey, bytes], iv: bytes, ciphertext: bytes,
                    associated_data: Optional[bytes] = None) -> bytes:
    """
    Decrypt a message using AES-256-GCM.

    Args:
        key: Session key (or 32 raw key bytes)
        iv: Nonce used at encryption
        ciphertext: Encrypted message + tag
        associated_data: Additional authenticated data

    Returns:
        Decrypted plaintext

    Raises:
        AuthenticationError: If the tag does not verify
    """
    if len(iv) != IV_LENGTH:
        raise AuthenticationError(f"IV must be {IV_LENGTH} bytes")
    if len(ciphertext) < TAG_LENGTH:
        raise AuthenticationError("Ciphertext too short")

    try:
        return _cipher_for(key).decrypt(iv, ciphertext, associated_data)
    except InvalidTag as e:
        raise AuthenticationError("Decryption failed: authentication tag mismatch") from e


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """
    Constant-time comparison to prevent timing attacks.

    Args:
        a: First byte string
        b: Second byte string

    Returns:
        True if equal, False otherwise
    """
    return hmac.compare_digest(a, b)
