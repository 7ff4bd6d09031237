"""Bounded, persisted record of messages that were already forwarded."""

from __future__ import annotations

import json
import logging
import os
import shutil
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import closing
from pathlib import Path
from typing import Any, Final, Protocol

from .errors import PersistenceFailure
from .structured_logging import log_event

__all__ = [
    "DEFAULT_MAX_KEYS",
    "DEFAULT_TRIM_BATCH",
    "JsonKeyStore",
    "KeyStore",
    "MemoryKeyStore",
    "ProcessedSet",
    "SqliteKeyStore",
]

DEFAULT_MAX_KEYS: Final = 5000
DEFAULT_TRIM_BATCH: Final = 1000

_DB_PRAGMA = "PRAGMA journal_mode=WAL;" "PRAGMA synchronous=FULL;"


class KeyStore(Protocol):
    """Operations the relay engine needs from a dedup store."""

    def has(self, key: str) -> bool:
        ...

    def record(self, key: str) -> None:
        ...

    def __len__(self) -> int:
        ...


class ProcessedSet:
    """Insertion-ordered key set that drops its oldest keys in bulk."""

    __slots__ = ("_keys", "_max_keys", "_trim_batch")

    def __init__(
        self,
        keys: Iterable[str] = (),
        *,
        max_keys: int = DEFAULT_MAX_KEYS,
        trim_batch: int = DEFAULT_TRIM_BATCH,
    ) -> None:
        if max_keys <= 0:
            raise ValueError("max_keys must be positive")
        if not 0 <= trim_batch < max_keys:
            raise ValueError("trim_batch must be between 0 and max_keys - 1")
        self._max_keys = max_keys
        self._trim_batch = trim_batch
        self._keys: dict[str, None] = dict.fromkeys(keys)
        self._trim()

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[str]:
        return iter(self._keys)

    def add(self, key: str) -> list[str]:
        """Add ``key`` and return the keys evicted to stay under the ceiling."""

        if key in self._keys:
            return []
        self._keys[key] = None
        return self._trim()

    def _trim(self) -> list[str]:
        if len(self._keys) <= self._max_keys:
            return []
        keep = self._max_keys - self._trim_batch
        drop_count = len(self._keys) - keep
        evicted: list[str] = []
        iterator = iter(self._keys)
        for _ in range(drop_count):
            evicted.append(next(iterator))
        for key in evicted:
            del self._keys[key]
        return evicted


class MemoryKeyStore:
    """Process-local store; persistent subclasses hook into :meth:`_persist`."""

    def __init__(
        self,
        keys: Iterable[str] = (),
        *,
        max_keys: int = DEFAULT_MAX_KEYS,
        trim_batch: int = DEFAULT_TRIM_BATCH,
    ) -> None:
        self._processed = ProcessedSet(keys, max_keys=max_keys, trim_batch=trim_batch)

    def has(self, key: str) -> bool:
        return key in self._processed

    def record(self, key: str) -> None:
        if key in self._processed:
            return
        evicted = self._processed.add(key)
        if evicted:
            log_event(
                "dedup_trimmed",
                level=logging.INFO,
                origin=None,
                message_key=key,
                target=None,
                outcome="evicted",
                latency_ms=None,
                extra={"evicted": len(evicted), "remaining": len(self._processed)},
            )
        try:
            self._persist(key, evicted)
        except PersistenceFailure as exc:
            # The in-memory set stays authoritative for the rest of the run.
            log_event(
                "dedup_persist_failed",
                level=logging.ERROR,
                origin=None,
                message_key=key,
                target=None,
                outcome="failure",
                latency_ms=None,
                extra={"error": str(exc), "store": type(self).__name__},
            )

    def keys(self) -> list[str]:
        return list(self._processed)

    def __len__(self) -> int:
        return len(self._processed)

    def close(self) -> None:
        return None

    def _persist(self, added: str, evicted: list[str]) -> None:
        return None


class JsonKeyStore(MemoryKeyStore):
    """Keys kept as a JSON list, rewritten atomically after every record."""

    def __init__(
        self,
        path: Path,
        *,
        max_keys: int = DEFAULT_MAX_KEYS,
        trim_batch: int = DEFAULT_TRIM_BATCH,
    ) -> None:
        self._path = path
        self._dirty = False
        super().__init__(self._load(), max_keys=max_keys, trim_batch=trim_batch)

    @property
    def path(self) -> Path:
        return self._path

    def save(self) -> None:
        if not self._dirty:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as file:
            json.dump(self.keys(), file, indent=2)
            file.flush()
            os.fsync(file.fileno())
        try:
            tmp_path.replace(self._path)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
        self._dirty = False

    def _persist(self, added: str, evicted: list[str]) -> None:
        self._dirty = True
        try:
            self.save()
        except OSError as exc:
            raise PersistenceFailure(f"Could not write {self._path}: {exc}") from exc

    def _load(self) -> list[str]:
        if not self._path.exists():
            return []
        try:
            with self._path.open("r", encoding="utf-8") as file:
                raw_data: Any = json.load(file)
        except (ValueError, OSError) as exc:
            # Undecodable or unreadable state: start fresh, keep the original aside.
            _set_aside(self._path, exc)
            return []

        if isinstance(raw_data, dict):
            # Older state files wrap the list in an object.
            raw_data = raw_data.get("processed") or raw_data.get("keys") or []
        if not isinstance(raw_data, list):
            return []

        keys: list[str] = []
        for value in raw_data:
            if value is None:
                continue
            text = str(value).strip()
            if text:
                keys.append(text)
        return keys


class SqliteKeyStore(MemoryKeyStore):
    """Keys kept in a SQLite table ordered by insertion sequence."""

    def __init__(
        self,
        path: Path,
        *,
        max_keys: int = DEFAULT_MAX_KEYS,
        trim_batch: int = DEFAULT_TRIM_BATCH,
    ) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            keys = self._open()
        except sqlite3.DatabaseError as exc:
            _set_aside(self._path, exc)
            for suffix in ("-wal", "-shm"):
                self._path.with_name(self._path.name + suffix).unlink(missing_ok=True)
            try:
                keys = self._open()
            except sqlite3.DatabaseError:
                # Still unusable; keep keys for this run only.
                keys = self._open(":memory:")
        super().__init__(keys, max_keys=max_keys, trim_batch=trim_batch)
        self._prune_to_memory()

    def _open(self, database: Path | str | None = None) -> list[str]:
        self._conn = sqlite3.connect(self._path if database is None else database)
        self._conn.row_factory = sqlite3.Row
        try:
            self._setup()
            return self._load()
        except sqlite3.DatabaseError:
            self._conn.close()
            raise

    def _setup(self) -> None:
        with closing(self._conn.cursor()) as cur:
            for statement in _DB_PRAGMA.split(";"):
                if statement.strip():
                    cur.execute(statement)
            cur.executescript(
                """
                CREATE TABLE IF NOT EXISTS processed_keys (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    key TEXT NOT NULL UNIQUE
                );
                """
            )
            self._conn.commit()

    def _load(self) -> list[str]:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT key FROM processed_keys ORDER BY seq")
            rows = cur.fetchall()
        return [str(row["key"]) for row in rows]

    def _prune_to_memory(self) -> None:
        # A lowered ceiling trims on load; mirror that on disk.
        stored = self._load()
        if len(stored) == len(self):
            return
        stale = [key for key in stored if not self.has(key)]
        with closing(self._conn.cursor()) as cur:
            cur.executemany("DELETE FROM processed_keys WHERE key=?", [(key,) for key in stale])
            self._conn.commit()

    def _persist(self, added: str, evicted: list[str]) -> None:
        try:
            with closing(self._conn.cursor()) as cur:
                cur.execute("INSERT OR IGNORE INTO processed_keys(key) VALUES(?)", (added,))
                if evicted:
                    cur.execute(
                        "DELETE FROM processed_keys WHERE seq IN ("
                        "SELECT seq FROM processed_keys ORDER BY seq LIMIT ?)",
                        (len(evicted),),
                    )
                self._conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Could not update {self._path}: {exc}") from exc

    def close(self) -> None:
        self._conn.close()


def _set_aside(path: Path, error: Exception) -> None:
    """Move unusable state to ``<name>.bak`` so the store can start empty."""

    backup_path = path.with_suffix(".bak")
    backup: str | None = str(backup_path)
    try:
        if backup_path.is_dir():
            shutil.rmtree(backup_path)
        else:
            backup_path.unlink(missing_ok=True)
        path.rename(backup_path)
    except OSError as exc:
        # Leave it in place; the next save reports the failure.
        backup = None
        error = exc
    log_event(
        "dedup_state_corrupted",
        level=logging.WARNING,
        origin=None,
        message_key=None,
        target=None,
        outcome="reset",
        latency_ms=None,
        extra={
            "path": str(path),
            "backup": backup,
            "error": f"{type(error).__name__}: {error}",
        },
    )
