"""
Visitor-ID Storage Backends

Independent places a client keeps its visitor identifier. Each backend may
fail or be wiped on its own; the VisitorIdManager votes across all of them.

Backend         Survives                         Analogue
--------------  -------------------------------  -------------------
memory          current process only             session storage
json-file       process restarts                 local storage
sqlite          process restarts                 IndexedDB
environment     child processes of one session   window.name
server-token    local storage loss               ETag cache
"""

import json
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import MutableMapping, Optional

from loguru import logger


DEFAULT_KEY = "pehchaan_visitor_id"


def _clean(value) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class StorageBackend(ABC):
    """One independently failing persistence channel."""

    name = "backend"

    @abstractmethod
    def read(self) -> Optional[str]:
        """Stored identifier, or None if absent."""

    @abstractmethod
    def write(self, value: str):
        """Store identifier (may raise)."""

    def is_available(self) -> bool:
        return True


class MemoryBackend(StorageBackend):
    """Process-scoped store."""

    name = "memory"

    def __init__(self, name: str = "memory"):
        self.name = name
        self._value: Optional[str] = None
        self._lock = threading.Lock()

    def read(self) -> Optional[str]:
        with self._lock:
            return self._value

    def write(self, value: str):
        with self._lock:
            self._value = value

    def clear(self):
        with self._lock:
            self._value = None


class JsonFileBackend(StorageBackend):
    """Key/value JSON document on disk."""

    name = "json-file"

    def __init__(self, path, key: str = DEFAULT_KEY):
        self.path = Path(path)
        self.key = key

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}

    def read(self) -> Optional[str]:
        return _clean(self._load().get(self.key))

    def write(self, value: str):
        try:
            data = self._load()
        except ValueError:
            logger.debug(f"Overwriting corrupt visitor-id file {self.path}")
            data = {}
        data[self.key] = value

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f)
        os.replace(tmp_path, self.path)

    def is_available(self) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        return os.access(self.path.parent, os.W_OK)


class SQLiteBackend(StorageBackend):
    """Single-row key/value table in an SQLite file."""

    name = "sqlite"

    def __init__(self, db_path, key: str = DEFAULT_KEY):
        self.db_path = Path(db_path)
        self.key = key

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path))
        conn.execute("CREATE TABLE IF NOT EXISTS visitor_ids (key TEXT PRIMARY KEY, value TEXT NOT NULL)")
        return conn

    def read(self) -> Optional[str]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT value FROM visitor_ids WHERE key = ?", (self.key,)).fetchone()
            return _clean(row[0]) if row else None
        finally:
            conn.close()

    def write(self, value: str):
        conn = self._connect()
        try:
            conn.execute("INSERT OR REPLACE INTO visitor_ids (key, value) VALUES (?, ?)", (self.key, value))
            conn.commit()
        finally:
            conn.close()


class EnvironmentBackend(StorageBackend):
    """
    JSON object carried in an environment variable.

    Other keys in the object are preserved on write.
    """

    name = "environment"

    def __init__(self, variable: str = "PEHCHAAN_SESSION",
                 environ: Optional[MutableMapping[str, str]] = None,
                 key: str = "visitorId"):
        self.variable = variable
        self.environ = os.environ if environ is None else environ
        self.key = key

    def _load(self) -> dict:
        raw = self.environ.get(self.variable)
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def read(self) -> Optional[str]:
        return _clean(self._load().get(self.key))

    def write(self, value: str):
        data = self._load()
        data[self.key] = value
        self.environ[self.variable] = json.dumps(data)


class ServerTokenBackend(StorageBackend):
    """
    Server-held mapping reached through an opaque token.

    The token is cached in a local file; the server resolves it back to the
    visitor id even after every other local store was cleared.
    """

    name = "server-token"

    def __init__(self, client, token_path):
        """
        Args:
            client: IdentityClient
            token_path: File caching the issued token
        """
        self.client = client
        self.token_path = Path(token_path)

    def _token(self) -> Optional[str]:
        if not self.token_path.exists():
            return None
        return _clean(self.token_path.read_text(encoding="utf-8"))

    def read(self) -> Optional[str]:
        token = self._token()
        if not token:
            return None
        return _clean(self.client.resolve_token(token))

    def write(self, value: str):
        token = self.client.store_token(value)
        self.token_path.parent.mkdir(parents=True, exist_ok=True)
        self.token_path.write_text(token, encoding="utf-8")

    def is_available(self) -> bool:
        return self.client is not None
