"""Shared remote-control token persisted in the user config dir."""

from __future__ import annotations

import json
import logging
import secrets
from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, ValidationError

from treadle.atomic import atomic_write
from treadle.models import utc_now
from treadle.paths import get_remote_config_path

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_TOKEN_BYTES = 32


def generate_token() -> str:
    return secrets.token_hex(_TOKEN_BYTES)


class RemoteToken(BaseModel):
    token: str = Field(default_factory=generate_token)
    token_created_at: datetime = Field(default_factory=utc_now)
    token_version: int = 1


class RemoteTokenStore:
    """Reads, creates and rotates ``remote.json``."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or get_remote_config_path()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> RemoteToken | None:
        if not self._path.exists():
            return None
        try:
            return RemoteToken.model_validate(json.loads(self._path.read_text(encoding="utf-8")))
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning("Ignoring unreadable remote token file %s: %s", self._path, exc)
            return None

    def load_or_create(self) -> RemoteToken:
        existing = self.load()
        if existing is not None:
            return existing
        token = RemoteToken()
        self._write(token)
        logger.info("Created remote control token at %s", self._path)
        return token

    def rotate(self) -> RemoteToken:
        """Replace the token; clients holding the old one can no longer authenticate."""
        previous = self.load()
        token = RemoteToken(token_version=previous.token_version + 1 if previous else 1)
        self._write(token)
        logger.info("Rotated remote control token (version %d)", token.token_version)
        return token

    def _write(self, token: RemoteToken) -> None:
        atomic_write(self._path, token.model_dump_json(indent=2), mode=0o600)


__all__ = ["RemoteToken", "RemoteTokenStore", "generate_token"]
