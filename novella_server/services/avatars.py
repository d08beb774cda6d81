# Copyright (C) 2024 Novella Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Avatar image storage on the local filesystem."""

import logging
from pathlib import Path
from typing import Protocol

import anyio

from novella_server.exceptions import StorageFailed, ValidationError

logger = logging.getLogger(__name__)

AVATAR_FILENAME = "avatar"


def avatar_url(username: str) -> str:
    return f"/api/auth/avatar/{username}"


def sniff_image_type(data: bytes) -> str:
    """Best-effort MIME type from magic bytes; defaults to PNG."""
    if data[:2] == b"\xff\xd8":
        return "image/jpeg"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/png"


class AvatarStore(Protocol):
    async def save(self, username: str, data: bytes) -> str:
        ...

    async def load(self, username: str) -> bytes | None:
        ...


class FileAvatarStore:
    """Stores one avatar per user at <root>/users/<username>/avatar."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _path(self, username: str) -> Path:
        if not username or Path(username).name != username or username in (".", ".."):
            raise ValidationError("Invalid username")
        return self.root / "users" / username / AVATAR_FILENAME

    async def save(self, username: str, data: bytes) -> str:
        """Write the image and return the URL it is served from."""
        path = anyio.Path(self._path(username))
        try:
            await path.parent.mkdir(parents=True, exist_ok=True)
            await path.write_bytes(data)
        except OSError as e:
            logger.exception("Failed to save avatar for %s", username)
            raise StorageFailed("Failed to save avatar image") from e
        return avatar_url(username)

    async def load(self, username: str) -> bytes | None:
        try:
            path = anyio.Path(self._path(username))
        except ValidationError:
            return None
        try:
            return await path.read_bytes()
        except FileNotFoundError:
            return None
