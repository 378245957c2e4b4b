"""
Relay configuration.

Values come from the environment with defaults suitable for local use.
"""

import logging
import os

HOST = os.getenv("CIPHERCHAT_HOST", "0.0.0.0")
PORT = int(os.getenv("CIPHERCHAT_PORT", "8080"))
DATABASE_URL = os.getenv("CIPHERCHAT_DATABASE_URL", "sqlite+aiosqlite:///./cipherchat.db")

# Signs registry tokens - set this in any shared deployment
SECRET_KEY = os.getenv("CIPHERCHAT_SECRET_KEY", "change-this-secret-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("CIPHERCHAT_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 30)))

# Envelopes buffered per recipient before the relay starts dropping for it
OUTBOX_SIZE = int(os.getenv("CIPHERCHAT_OUTBOX_SIZE", "256"))

LOG_LEVEL = os.getenv("CIPHERCHAT_LOG_LEVEL", "INFO").upper()


def configure_logging(level: str = LOG_LEVEL):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
