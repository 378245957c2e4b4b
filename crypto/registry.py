"""
Public key registry lookups.

A registry maps an identity to the fingerprint (SHA-256 of the raw public
key) that identity registered. Peers consult it before trusting a public
key that arrived over the relay.
"""

import hashlib
import logging
from urllib.parse import quote
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

import httpx

from .primitives import constant_time_compare

logger = logging.getLogger(__name__)


def fingerprint(public_key: bytes) -> str:
    """Lowercase hex SHA-256 of a raw public key"""
    return hashlib.sha256(public_key).hexdigest()


@dataclass
class KeyRegistration:
    """
    Record emitted when a key is registered.

    Attributes:
        identity: Who registered the key
        fingerprint: Hex SHA-256 of the raw public key
        time: When the registration happened
    """
    identity: str
    fingerprint: str
    time: datetime


class KeyRegistry(Protocol):
    """Anything that can vouch for an identity's public key"""

    def verify(self, public_key: bytes, identity: str) -> bool:
        ...


def _matches(public_key: bytes, registered: Optional[str]) -> bool:
    if not registered:
        return False
    local = fingerprint(public_key).encode()
    return constant_time_compare(local, registered.lower().encode())


class InMemoryKeyRegistry:
    """Registry held in process memory"""

    def __init__(self):
        self._records: Dict[str, KeyRegistration] = {}

    def register_key(self, identity: str, public_key: bytes) -> KeyRegistration:
        record = KeyRegistration(
            identity=identity,
            fingerprint=fingerprint(public_key),
            time=datetime.now(timezone.utc)
        )
        self._records[identity] = record
        return record

    def get_key(self, identity: str) -> Optional[str]:
        record = self._records.get(identity)
        return record.fingerprint if record else None

    def verify(self, public_key: bytes, identity: str) -> bool:
        return _matches(public_key, self.get_key(identity))


class HttpKeyRegistry:
    """
    Client for the relay's key registry endpoints.

    Registration returns a bearer token; it is kept on this object and sent
    on later registrations so the same identity can rotate its key.
    """

    def __init__(self, base_url: str, timeout: float = 5.0,
                 client: Optional[httpx.Client] = None):
        """
        Args:
            base_url: Registry service URL, e.g. http://localhost:8080
            timeout: Per-request timeout in seconds
            client: Preconfigured httpx client (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.http_client = client or httpx.Client(timeout=timeout)
        self.token: Optional[str] = None

    def register_key(self, identity: str, public_key: bytes) -> KeyRegistration:
        """
        Register our public key under an identity.

        Raises:
            httpx.HTTPStatusError: If the service refuses the registration
        """
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        response = self.http_client.post(
            f"{self.base_url}/api/keys",
            json={"identity": identity, "public_key": public_key.hex()},
            headers=headers
        )
        response.raise_for_status()
        data = response.json()
        self.token = data.get("access_token", self.token)
        logger.info("Registered key %s for %s", data["fingerprint"][:16], identity)
        return KeyRegistration(
            identity=data["identity"],
            fingerprint=data["fingerprint"],
            time=datetime.fromisoformat(data["time"].replace("Z", "+00:00"))
        )

    def get_key(self, identity: str) -> Optional[str]:
        """Fetch the registered fingerprint, or None if unknown"""
        response = self.http_client.get(f"{self.base_url}/api/keys/{quote(identity, safe='')}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        data = response.json()
        # Servers decode %2F before routing, so a name with a slash can land elsewhere
        if not isinstance(data, dict) or data.get("identity") != identity:
            logger.warning("Registry answered for a different identity than %s", identity)
            return None
        return data.get("fingerprint")

    def verify(self, public_key: bytes, identity: str) -> bool:
        try:
            registered = self.get_key(identity)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Registry lookup for %s failed: %s", identity, e)
            return False
        return _matches(public_key, registered)

    def close(self):
        self.http_client.close()
