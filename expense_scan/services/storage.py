from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from expense_scan.core.config import settings
from expense_scan.core.db import SessionLocal
from expense_scan.models.kv_item import KeyValueItem
from expense_scan.services.errors import NotFoundError, PersistenceError, ValidationError

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    async def get_item(self, key: str) -> Optional[str]: ...

    async def set_item(self, key: str, value: str) -> None: ...

    async def remove_item(self, key: str) -> None: ...


class InMemoryKeyValueStore:
    def __init__(self, initial: dict[str, str] | None = None):
        self.data: dict[str, str] = dict(initial or {})

    async def get_item(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self.data[key] = value

    async def remove_item(self, key: str) -> None:
        self.data.pop(key, None)


class SqlKeyValueStore:
    """Key-value storage on the `kv_items` table. Blocking I/O runs in a worker thread."""

    def __init__(self, session_factory: sessionmaker[Session] = SessionLocal):
        self.session_factory = session_factory

    def _get(self, key: str) -> Optional[str]:
        db = self.session_factory()
        try:
            item = db.get(KeyValueItem, key)
            return item.value if item else None
        finally:
            db.close()

    def _set(self, key: str, value: str) -> None:
        db = self.session_factory()
        try:
            item = db.get(KeyValueItem, key)
            if item is None:
                db.add(KeyValueItem(key=key, value=value))
            else:
                item.value = value
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to write key {key!r}: {e}") from e
        finally:
            db.close()

    def _remove(self, key: str) -> None:
        db = self.session_factory()
        try:
            db.query(KeyValueItem).filter(KeyValueItem.key == key).delete()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to remove key {key!r}: {e}") from e
        finally:
            db.close()

    async def get_item(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._get, key)

    async def set_item(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._set, key, value)

    async def remove_item(self, key: str) -> None:
        await asyncio.to_thread(self._remove, key)


class LocalObjectStore:
    """Receipt images on the local filesystem, addressed by paths relative to `root`."""

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root or settings.UPLOAD_DIR).resolve()

    def _resolve(self, path: str) -> Path:
        if not path or not path.strip():
            raise ValidationError("Storage path must be a non-empty string")
        target = (self.root / path.strip().lstrip("/")).resolve()
        if target != self.root and self.root not in target.parents:
            logger.warning("rejected storage path outside root: %s", path)
            raise ValidationError(f"Storage path escapes the store root: {path}")
        return target

    async def exists(self, path: str) -> bool:
        target = self._resolve(path)
        return await asyncio.to_thread(target.is_file)

    async def download(self, path: str) -> bytes:
        target = self._resolve(path)
        if not await asyncio.to_thread(target.is_file):
            raise NotFoundError(f"Receipt file not found: {path}")
        return await asyncio.to_thread(target.read_bytes)

    async def upload(self, path: str, data: bytes) -> str:
        target = self._resolve(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        return str(target.relative_to(self.root)).replace("\\", "/")
