"""
FastAPI relay server for CipherChat.

This server:
- Broadcasts envelopes between connected peers over WebSocket (never
  decrypts, never stores them)
- Hosts a key registry that maps identities to public key fingerprints
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, Header, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from crypto.primitives import KeyImportError, import_public_key

from . import config
from .auth import bearer_token, create_access_token, verify_token
from .broadcaster import Broadcaster
from .database import Database

logger = logging.getLogger(__name__)


# Pydantic models for API
class KeyRegister(BaseModel):
    identity: str = Field(min_length=1, max_length=100, pattern=r"^[^/]+$")
    public_key: str  # hex encoded raw point


class KeyRegistered(BaseModel):
    identity: str
    fingerprint: str
    time: datetime


class KeyRegisteredWithToken(KeyRegistered):
    access_token: str
    token_type: str = "bearer"


def create_app(database_url: str = config.DATABASE_URL,
               secret_key: str = config.SECRET_KEY,
               outbox_size: int = config.OUTBOX_SIZE) -> FastAPI:
    """
    Build the relay application.

    Args:
        database_url: Key registry database
        secret_key: Signing key for registry tokens
        outbox_size: Frames buffered per recipient
    """
    db = Database(database_url)
    broadcaster = Broadcaster(outbox_size=outbox_size)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        await db.create_tables()
        logger.info("Key registry ready")
        yield
        broadcaster.close()
        await db.dispose()
        logger.info("Relay shutting down")

    app = FastAPI(
        title="CipherChat Relay",
        description="Blind relay for end-to-end encrypted chat, with a public key registry",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.db = db
    app.state.broadcaster = broadcaster

    @app.get("/health")
    async def health():
        return {"status": "healthy", "connections": len(broadcaster.connections)}

    @app.post("/api/keys", response_model=KeyRegisteredWithToken)
    async def register_key(body: KeyRegister, authorization: Optional[str] = Header(default=None)):
        """
        Register a public key for an identity.

        A new identity registers freely. An identity that already has a key
        must present the token returned by its first registration.
        """
        try:
            raw = bytes.fromhex(body.public_key)
            import_public_key(raw)
        except (ValueError, KeyImportError) as e:
            raise HTTPException(status_code=400, detail=f"Invalid public key: {e}")

        if await db.is_registered(body.identity):
            token = bearer_token(authorization)
            if not token:
                raise HTTPException(status_code=401, detail="Identity already registered")
            if verify_token(token, secret_key) != body.identity:
                raise HTTPException(status_code=403, detail="Not authorized for this identity")

        event = await db.register_key(body.identity, raw)
        logger.info("Registered key %s for %s", event.fingerprint[:16], event.identity)

        return KeyRegisteredWithToken(
            identity=event.identity,
            fingerprint=event.fingerprint,
            time=event.time,
            access_token=create_access_token(event.identity, secret_key=secret_key)
        )

    @app.get("/api/keys/{identity}", response_model=KeyRegistered)
    async def get_key(identity: str):
        """Current fingerprint for an identity"""
        record = await db.get_key(identity)
        if not record:
            raise HTTPException(status_code=404, detail="No key registered for this identity")
        return KeyRegistered(identity=record.identity, fingerprint=record.fingerprint, time=record.time)

    @app.get("/api/keys/{identity}/events", response_model=List[KeyRegistered])
    async def get_key_events(identity: str):
        """Registration history for an identity"""
        events = await db.list_events(identity)
        return [KeyRegistered(identity=e.identity, fingerprint=e.fingerprint, time=e.time) for e in events]

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        WebSocket endpoint for envelopes.

        Every text frame from a client is relayed unchanged (plus a
        timestamp) to every other client. Frames that are not JSON objects
        with a ``kind`` are dropped without a reply.
        """
        await websocket.accept()
        client = websocket.client
        label = f"{client.host}:{client.port}" if client else None
        connection = broadcaster.on_connect(websocket, label)

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                broadcaster.on_message(connection, raw)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error("WebSocket error from %s: %s", connection.label, e)
        finally:
            broadcaster.on_disconnect(connection)

    return app


app = create_app()


def main():
    import uvicorn
    config.configure_logging()
    uvicorn.run(app, host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    main()
