from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import Any

from agent_scheduler.models import StoreFile, parse_store, serialize_store

logger = logging.getLogger(__name__)


def _write_text(path: Path, text: str) -> None:
    with path.open("w", encoding="utf-8") as handle:
        handle.write(text)
        handle.flush()
        os.fsync(handle.fileno())


class JobStore:
    """JSON file holding every scheduled job plus the per-owner timezones.

    Writes go to a unique temp file that is renamed over the canonical path,
    so readers only ever see a complete document. A ``.bak`` copy is refreshed
    after each write on a best-effort basis.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def backup_path(self) -> Path:
        return self._path.with_name(self._path.name + ".bak")

    async def load(self) -> StoreFile:
        async with self._lock:
            payload = await asyncio.to_thread(self._read_sync)
        if payload is None:
            return StoreFile()
        return parse_store(payload)

    async def save(self, store: StoreFile) -> None:
        text = json.dumps(serialize_store(store), ensure_ascii=False, indent=2) + "\n"
        async with self._lock:
            await asyncio.to_thread(self._write_sync, text)

    def _read_sync(self) -> Any | None:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return json.loads(raw)

    def _write_sync(self, text: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(f"{self._path.name}.{os.getpid()}.{uuid.uuid4().hex[:12]}.tmp")
        try:
            _write_text(tmp_path, text)
            os.replace(tmp_path, self._path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        try:
            shutil.copyfile(self._path, self.backup_path)
        except OSError as exc:
            # best-effort: the canonical file is already durable
            logger.warning("Scheduler store backup failed: %s", exc)
