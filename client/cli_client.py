#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Chat

Provides a command-line peer for:
- Announcing a P-256 public key through the relay
- Deriving a session key when the peer's key arrives
- Sending and receiving AES-GCM encrypted messages
- Optionally checking peer keys against the relay's key registry
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from typing import Optional

import websockets
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from crypto.primitives import CryptoError, StateError
from crypto.registry import HttpKeyRegistry, fingerprint
from crypto.session import EventKind, PeerSession, SessionEvent
from protocol.envelope import (
    PubkeyEnvelope,
    TransportParseError,
    decode_envelope,
    encode_envelope,
)

logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  /rekey - Generate a new keypair and announce it
  /announce - Re-send our public key
  /fingerprint - Show our key fingerprint and session key check value
  /register - Register our key with the key registry
  /help - Show this help
  /quit - Quit application"""


class PeerClient:
    """
    End-to-end encrypted chat peer.
    """

    def __init__(self, identity: str, peer: str,
                 relay_url: str = "ws://localhost:8080/ws",
                 registry_url: Optional[str] = None):
        """
        Initialize chat peer.

        Args:
            identity: Our name on the wire
            peer: Name of the party we talk to
            relay_url: WebSocket URL of the relay
            registry_url: Base URL of the key registry, if keys must be verified
        """
        self.relay_url = relay_url
        self.registry = HttpKeyRegistry(registry_url) if registry_url else None
        self.session = PeerSession(identity, peer, registry=self.registry)
        self.session.add_listener(self._on_event)
        self.websocket = None
        self.running = False

    @property
    def identity(self) -> str:
        return self.session.identity

    @property
    def peer(self) -> str:
        return self.session.peer

    def _on_event(self, event: SessionEvent):
        """Render session events"""
        timestamp = datetime.now().strftime("%H:%M")
        if event.kind == EventKind.KEY_READY:
            print(f"[Keypair ready - fingerprint {fingerprint(self.session.public_key)[:16]}]")
        elif event.kind == EventKind.PEER_KEY_RECEIVED:
            print(f"[Secure session with {event.peer} ready - key check {event.key_check}]")
        elif event.kind == EventKind.PEER_KEY_REJECTED:
            print(f"[Rejected key from {event.peer}: {event.error}]")
        elif event.kind == EventKind.MESSAGE_DECRYPTED:
            print(f"[{timestamp}] {event.peer}: {event.plaintext}")
        elif event.kind == EventKind.DECRYPT_FAILED:
            print(f"[Failed to decrypt message from {event.peer}]")

    async def connect(self) -> bool:
        """Connect to the relay and announce a fresh key"""
        try:
            self.websocket = await websockets.connect(self.relay_url)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            print(f"Could not connect to relay: {e}")
            return False

        print(f"Connected to relay {self.relay_url} as {self.identity}")
        self.session.generate_keypair()
        await self.send_envelope(self.session.announce())
        return True

    async def send_envelope(self, envelope):
        await self.websocket.send(encode_envelope(envelope))

    async def send_message(self, text: str):
        """Encrypt and send a message to the peer"""
        try:
            envelope = self.session.send(text)
        except StateError:
            print(f"No session with {self.peer} yet - waiting for their public key")
            return
        await self.send_envelope(envelope)

    async def rekey(self):
        """Rotate our keypair and tell the peer"""
        await self.send_envelope(self.session.generate_keypair())

    async def register_key(self):
        """Register our current public key with the key registry"""
        if self.registry is None:
            print("No registry configured (use --registry)")
            return
        try:
            record = await asyncio.to_thread(
                self.registry.register_key, self.identity, self.session.public_key
            )
            print(f"Registered fingerprint {record.fingerprint[:16]} at {record.time:%H:%M}")
        except Exception as e:
            print(f"Registration failed: {e}")

    async def handle_frame(self, raw):
        """Handle one frame from the relay"""
        try:
            envelope = decode_envelope(raw)
        except TransportParseError as e:
            logger.debug("Ignoring malformed frame: %s", e)
            return

        if isinstance(envelope, PubkeyEnvelope):
            if envelope.side != self.peer:
                return
            try:
                # Registry lookups block, keep them off the event loop
                changed = await asyncio.to_thread(
                    self.session.receive_peer_public_key, envelope.public_key_bytes
                )
            except CryptoError:
                return
            if changed:
                # The peer may have missed our announcement
                await self.send_envelope(self.session.announce())
            return

        try:
            self.session.handle(envelope)
        except CryptoError as e:
            logger.debug("Dropped message: %s", e)

    async def receive_messages(self):
        """Background task to receive envelopes"""
        try:
            async for raw in self.websocket:
                await self.handle_frame(raw)
        except websockets.exceptions.ConnectionClosed:
            print("\nConnection closed")
        except Exception as e:
            logger.exception("Receive error")
            print(f"\nReceive error: {e}")
        finally:
            self.running = False

    async def run_interactive(self):
        """Run interactive chat session"""
        self.running = True

        receive_task = asyncio.create_task(self.receive_messages())
        session = PromptSession()

        print(f"\nChatting with {self.peer}. Type /help for commands.\n")

        try:
            while self.running:
                try:
                    with patch_stdout():
                        user_input = await session.prompt_async(f"[{self.identity}] > ")
                except (KeyboardInterrupt, EOFError):
                    break

                user_input = user_input.strip()
                if not user_input:
                    continue
                if user_input.startswith("/"):
                    await self._handle_command(user_input)
                else:
                    await self.send_message(user_input)

        finally:
            self.running = False
            receive_task.cancel()
            await self.close()

    async def close(self):
        if self.websocket:
            await self.websocket.close()
        if self.registry:
            self.registry.close()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        cmd = command.split(maxsplit=1)[0].lower()

        if cmd == "/rekey":
            await self.rekey()
        elif cmd == "/announce":
            await self.send_envelope(self.session.announce())
        elif cmd == "/fingerprint":
            print(f"Our fingerprint: {fingerprint(self.session.public_key)}")
            key = self.session.session_key
            print(f"Session key check: {key.check_value if key else 'none'}")
        elif cmd == "/register":
            await self.register_key()
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="CipherChat end-to-end encrypted peer")
    parser.add_argument("--name", required=True, help="Our identity, e.g. left")
    parser.add_argument("--peer", required=True, help="Peer identity, e.g. right")
    parser.add_argument("--relay", default="ws://localhost:8080/ws", help="Relay WebSocket URL")
    parser.add_argument("--registry", default=None,
                        help="Key registry base URL; when set, peer keys must be registered")
    parser.add_argument("--log-level", default="WARNING")
    return parser.parse_args(argv)


async def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.WARNING))

    client = PeerClient(args.name, args.peer, args.relay, args.registry)

    print("=" * 50)
    print("CipherChat - End-to-End Encrypted Chat")
    print("=" * 50)

    if await client.connect():
        await client.run_interactive()

    print("\nGoodbye!")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
