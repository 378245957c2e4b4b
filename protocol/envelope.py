"""
Wire envelopes exchanged through the relay.

Every frame is a JSON object with a ``kind`` discriminant:

    {"kind": "pubkey", "side": "left", "publicKey": "<base64>"}
    {"kind": "cipher", "from": "left", "target": "right",
     "iv": "<base64>", "ciphertext": "<base64>"}

The relay only needs ``read_frame``; peers use ``decode_envelope`` which
validates the fields of the kinds it knows and skips the rest.
"""

import base64
import binascii
import json
import logging
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

logger = logging.getLogger(__name__)

PUBKEY = "pubkey"
CIPHER = "cipher"
KNOWN_KINDS = frozenset({PUBKEY, CIPHER})


class TransportParseError(ValueError):
    """Incoming frame is not a well-formed envelope"""
    pass


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    return base64.b64decode(text, validate=True)


def _check_base64(value: str) -> str:
    try:
        b64decode(value)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"not valid base64: {e}") from e
    return value


class _Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    timestamp: Optional[str] = None


class PubkeyEnvelope(_Envelope):
    """Announces a peer's raw public key"""
    kind: Literal["pubkey"] = PUBKEY
    side: str = Field(min_length=1)
    public_key: str = Field(alias="publicKey")

    @field_validator("public_key")
    @classmethod
    def check_public_key(cls, value: str) -> str:
        return _check_base64(value)

    @classmethod
    def create(cls, side: str, public_key: bytes) -> "PubkeyEnvelope":
        return cls(side=side, public_key=b64encode(public_key))

    @property
    def public_key_bytes(self) -> bytes:
        return b64decode(self.public_key)


class CipherEnvelope(_Envelope):
    """AEAD output addressed to one peer"""
    kind: Literal["cipher"] = CIPHER
    sender: str = Field(alias="from", min_length=1)
    target: str = Field(min_length=1)
    iv: str
    ciphertext: str

    @field_validator("ciphertext")
    @classmethod
    def check_ciphertext(cls, value: str) -> str:
        return _check_base64(value)

    @field_validator("iv")
    @classmethod
    def check_iv(cls, value: str) -> str:
        _check_base64(value)
        if len(b64decode(value)) != 12:
            raise ValueError("iv must decode to 12 bytes")
        return value

    @classmethod
    def create(cls, sender: str, target: str, iv: bytes, ciphertext: bytes) -> "CipherEnvelope":
        return cls(sender=sender, target=target, iv=b64encode(iv), ciphertext=b64encode(ciphertext))

    @property
    def iv_bytes(self) -> bytes:
        return b64decode(self.iv)

    @property
    def ciphertext_bytes(self) -> bytes:
        return b64decode(self.ciphertext)


Envelope = Annotated[Union[PubkeyEnvelope, CipherEnvelope], Field(discriminator="kind")]
_envelope_adapter = TypeAdapter(Envelope)


def read_frame(raw: Union[str, bytes]) -> dict:
    """
    Parse a frame just far enough to relay it.

    Returns:
        The JSON object

    Raises:
        TransportParseError: If the frame is not a JSON object with a kind
    """
    try:
        data = json.loads(raw)
    except (ValueError, RecursionError) as e:
        # JSONDecodeError and UnicodeDecodeError are ValueErrors; so is the int digit limit
        raise TransportParseError(f"Frame is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise TransportParseError("Frame must be a JSON object")
    kind = data.get("kind")
    if not isinstance(kind, str) or not kind:
        raise TransportParseError("Frame has no kind")
    return data


def decode_envelope(raw: Union[str, bytes, dict]) -> Optional[Union[PubkeyEnvelope, CipherEnvelope]]:
    """
    Parse and validate an envelope.

    Returns:
        The envelope, or None for kinds this version does not know

    Raises:
        TransportParseError: If the frame or a known envelope is malformed
    """
    data = raw if isinstance(raw, dict) else read_frame(raw)
    if data.get("kind") not in KNOWN_KINDS:
        logger.debug("Ignoring envelope of unknown kind %r", data.get("kind"))
        return None

    try:
        return _envelope_adapter.validate_python(data)
    except ValidationError as e:
        raise TransportParseError(f"Invalid {data['kind']} envelope: {e}") from e


def encode_envelope(envelope: Union[PubkeyEnvelope, CipherEnvelope]) -> str:
    """Serialize an envelope with its wire field names"""
    return envelope.model_dump_json(by_alias=True, exclude_none=True)
