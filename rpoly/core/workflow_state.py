"""
WorkflowStateService — Cross-run KV store for the trading workflow.

Each workflow gets its own namespace directory under ``data_dir`` and every
key becomes a ``{key}.json`` document inside it::

    state = WorkflowStateService("updown", data_dir="data")
    await state.put("memory", {...})
    data = await state.get("memory")

Writes use atomic replace semantics: the document is written to a temporary
file in the same directory, fsync'ed and then ``os.replace``'d over the old
one, so a crash mid-write leaves either the old or the new document — never a
torn one.

Unlike a cache, this store is a source of truth: a corrupt document raises
``PersistenceError`` instead of being treated as empty.
"""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any

import structlog

from rpoly.errors import PersistenceError

logger = structlog.get_logger(__name__)


class WorkflowStateService:
    """Namespaced JSON document store backed by the local filesystem."""

    def __init__(self, workflow_name: str, *, data_dir: str | Path = "data") -> None:
        self._workflow_name = workflow_name
        self._root = Path(data_dir) / workflow_name

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        return self._root / f"{key}.json"

    # ── Read ──────────────────────────────────────────────────────────

    async def get(self, key: str) -> Any | None:
        """Load a JSON document by key, or ``None`` if it does not exist."""
        return await asyncio.to_thread(self._read, key)

    def _read(self, key: str) -> Any | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"Cannot read {path}: {e}", key=key) from e
        if not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise PersistenceError(
                f"Corrupt state document {path}", key=key, detail=str(e)
            ) from e

    # ── Write ─────────────────────────────────────────────────────────

    async def put(self, key: str, data: Any) -> None:
        """Atomically replace the document stored under ``key``."""
        await asyncio.to_thread(self._write, key, data)
        logger.debug("workflow_state_put", workflow=self._workflow_name, key=key)

    def _write(self, key: str, data: Any) -> None:
        path = self._path(key)
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self._root, prefix=f".{key}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, ensure_ascii=False, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Cannot write {path}: {e}", key=key) from e

    # ── Delete ────────────────────────────────────────────────────────

    async def delete(self, key: str) -> None:
        """Remove a key. Missing keys are ignored."""
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot delete {path}: {e}", key=key) from e
