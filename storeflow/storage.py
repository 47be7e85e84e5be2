"""Durable storage for the inventory and optional sync with a spreadsheet on disk."""
from __future__ import annotations

import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

from .inventory import InventoryStore, Product
from .spreadsheet import (
    SUPPORTED_SUFFIXES,
    XLS_MIMETYPE,
    XLSX_MIMETYPE,
    backup_filename,
    export_products,
    load_products,
    rows_to_products,
)

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """Raised when the durable store cannot be written."""


class FileAccessUnsupported(RuntimeError):
    """Raised when this runtime cannot hold a live spreadsheet file handle."""


class FileSyncError(RuntimeError):
    """Raised when reading or writing the connected spreadsheet fails."""


class SyncInProgressError(RuntimeError):
    """Raised when a sync operation is started while another one is running."""


class LocalStore:
    """Key-value slots persisted as a single JSON document."""

    def __init__(self, storage_path: Union[str, Path]) -> None:
        self.storage_path = Path(storage_path)
        self._lock = RLock()
        with self._lock:
            self._data = self._read_locked()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, values: Mapping[str, Any]) -> None:
        with self._lock:
            updated = dict(self._data)
            updated.update(values)
            self._write_locked(updated)
            self._data = updated

    def remove(self, key: str) -> None:
        with self._lock:
            if key not in self._data:
                return
            updated = dict(self._data)
            del updated[key]
            self._write_locked(updated)
            self._data = updated

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data)

    # helpers ------------------------------------------------------------
    def _read_locked(self) -> Dict[str, Any]:
        if not self.storage_path.exists():
            return {}
        raw = self.storage_path.read_bytes()
        try:
            loaded = json.loads(raw.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError):
            loaded = None
        if isinstance(loaded, dict):
            return loaded
        corrupt_path = self.storage_path.with_name(self.storage_path.name + ".corrupt")
        logger.warning(
            "Stored data at %s is unreadable; keeping a copy at %s and starting empty",
            self.storage_path,
            corrupt_path,
        )
        self.storage_path.replace(corrupt_path)
        return {}

    def _write_locked(self, data: Dict[str, Any]) -> None:
        temp_path = self.storage_path.with_suffix(".tmp")
        try:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(
                json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8"
            )
            temp_path.replace(self.storage_path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", self.storage_path, exc)
            raise StorageError(f"Could not save data to {self.storage_path}") from exc


@dataclass(frozen=True)
class FileHandle:
    """A spreadsheet the operator connected for in-place sync."""

    path: Path

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def format(self) -> str:
        return "xls" if self.path.suffix.lower() == ".xls" else "xlsx"


@dataclass(frozen=True)
class SaveResult:
    mode: str
    filename: Optional[str] = None
    content: Optional[bytes] = None
    reason: str = ""

    @property
    def mimetype(self) -> str:
        return XLS_MIMETYPE if (self.filename or "").endswith(".xls") else XLSX_MIMETYPE


class SpreadsheetSync:
    """Keeps the product list in step with one connected spreadsheet file.

    The handle lives for the process only. When no sync directory is
    available, :meth:`supports_file_handles` reports it so callers can fall
    back to plain uploads and downloads.
    """

    def __init__(self, store: InventoryStore, *, sync_root: Optional[Path] = None) -> None:
        self.store = store
        self.sync_root = Path(sync_root) if sync_root is not None else None
        self.handle: Optional[FileHandle] = None
        self._busy = Lock()

    # capability ---------------------------------------------------------
    def supports_file_handles(self) -> bool:
        if self.sync_root is None:
            return False
        if not self.sync_root.is_dir():
            return False
        return os.access(self.sync_root, os.R_OK | os.W_OK)

    @property
    def can_save(self) -> bool:
        return not (self.handle is not None and not self.store.unsaved_changes)

    def status(self) -> Dict[str, Any]:
        return {
            "supported": self.supports_file_handles(),
            "connected": self.handle is not None,
            "file_name": self.handle.name if self.handle is not None else None,
            "unsaved_changes": self.store.unsaved_changes,
            "can_save": self.can_save,
        }

    # operations ---------------------------------------------------------
    def connect(self, path: Union[str, Path]) -> List[Product]:
        if not self.supports_file_handles():
            raise FileAccessUnsupported(
                "Direct file sync is not available here; upload the spreadsheet instead."
            )
        with self._guard("connect"):
            handle = FileHandle(self._resolve(path))
            replaced = self._replace(self._read_handle(handle))
            if self.handle is not None and self.handle != handle:
                logger.info("Replacing connected file %s", self.handle.name)
            self.handle = handle
            self.store.mark_saved()
            logger.info("Connected %s with %d products", handle.name, len(replaced))
            return replaced

    def disconnect(self) -> None:
        if self.handle is not None:
            logger.info("Disconnected %s", self.handle.name)
        self.handle = None

    def save(self) -> SaveResult:
        with self._guard("save"):
            if not self.can_save:
                return SaveResult(mode="noop", reason="no unsaved changes")
            products = self.store.list_products()
            if not products:
                return SaveResult(mode="noop", reason="no products to save")
            handle = self.handle
            if handle is None:
                return SaveResult(
                    mode="download",
                    filename=backup_filename(),
                    content=export_products(products, "xlsx"),
                )
            content = export_products(products, handle.format)
            temp_path = handle.path.with_name(handle.path.name + ".tmp")
            try:
                temp_path.write_bytes(content)
                temp_path.replace(handle.path)
            except OSError as exc:
                logger.error("Failed to save %s: %s", handle.path, exc)
                raise FileSyncError(
                    f"Failed to save to {handle.name}. Ensure you have permission."
                ) from exc
            self.store.mark_saved()
            logger.info("Synced %d products to %s", len(products), handle.name)
            return SaveResult(mode="file", filename=handle.name)

    def load(self) -> List[Product]:
        if self.handle is None:
            raise FileSyncError("No spreadsheet is connected")
        with self._guard("load"):
            replaced = self._replace(self._read_handle(self.handle))
            self.store.mark_saved()
            return replaced

    def import_upload(self, data: bytes, filename: Optional[str] = None) -> List[Product]:
        """Replace the product list from uploaded bytes; an empty sheet changes nothing."""

        with self._guard("import"):
            return self._replace(load_products(data, filename))

    def import_rows(self, rows: List[Mapping[str, Any]]) -> List[Product]:
        with self._guard("import"):
            return self._replace(rows_to_products(rows))

    # helpers ------------------------------------------------------------
    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        if not self._busy.acquire(blocking=False):
            raise SyncInProgressError(f"Another spreadsheet operation is running ({operation})")
        try:
            yield
        finally:
            self._busy.release()

    def _replace(self, products: List[Product]) -> List[Product]:
        # a sheet without data rows leaves the current list in place
        if not products:
            logger.info("Spreadsheet contained no product rows; keeping current list")
            return []
        return self.store.replace_all(products)

    def _resolve(self, path: Union[str, Path]) -> Path:
        if self.sync_root is None:
            raise FileAccessUnsupported("No sync directory is configured")
        root = self.sync_root.resolve()
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = root / candidate
        candidate = candidate.resolve()
        if root != candidate and root not in candidate.parents:
            raise FileSyncError("The file must be inside the sync directory")
        if candidate.suffix.lower() not in SUPPORTED_SUFFIXES:
            raise FileSyncError("Only .xlsx and .xls spreadsheets can be connected")
        if not candidate.is_file():
            raise FileSyncError(f"File '{candidate.name}' not found")
        return candidate

    @staticmethod
    def _read_handle(handle: FileHandle) -> List[Product]:
        try:
            data = handle.path.read_bytes()
        except OSError as exc:
            raise FileSyncError(f"Could not read {handle.name}") from exc
        return load_products(data, handle.name)


__all__ = [
    "FileAccessUnsupported",
    "FileHandle",
    "FileSyncError",
    "LocalStore",
    "SaveResult",
    "SpreadsheetSync",
    "StorageError",
    "SyncInProgressError",
]
