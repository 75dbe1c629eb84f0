"""Hold music asset storage.

A missing asset is an expected outcome and is reported as ``None``, never as
an exception.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AssetInfo:
    name: str
    size: int


class AssetStore(Protocol):
    """Read-only access to stored audio assets."""

    async def get(self, name: str) -> bytes | None:  # pragma: no cover - protocol stub
        ...

    async def list(self) -> list[AssetInfo]:  # pragma: no cover - protocol stub
        ...


class LocalAssetStore:
    """Assets kept as flat files in one directory."""

    def __init__(self, root: Path) -> None:
        self._root = root

    def _path_for(self, name: str) -> Path | None:
        # Plain file names only; no traversal out of the asset directory.
        if not name or Path(name).name != name or name.startswith("."):
            return None
        return self._root / name

    async def get(self, name: str) -> bytes | None:
        path = self._path_for(name)
        if path is None or not path.is_file():
            LOGGER.debug("Asset not found: %s", name)
            return None
        data = await asyncio.to_thread(path.read_bytes)
        return data or None

    async def list(self) -> list[AssetInfo]:
        if not self._root.is_dir():
            return []
        return sorted(
            (
                AssetInfo(name=path.name, size=path.stat().st_size)
                for path in self._root.iterdir()
                if path.is_file() and not path.name.startswith(".")
            ),
            key=lambda info: info.name,
        )
