"""Durable key-value persistence for snapshots and the operation log.

``SqliteKeyValueStore`` keeps everything in the local project database and is
the default. ``HttpKeyValueStore`` talks to the Cloudflare Workers KV REST
API. Both raise :class:`PersistenceError` so callers can retry them through
the retry engine.
"""
from __future__ import annotations

import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import quote

import requests

from . import config
from .error_codes import PersistenceError, classify_http_status
from .logging_utils import _ranking_event

RECENT_LOGS_KEY = "recent_logs"


class KeyValueStore(Protocol):
    def put(self, key: str, value: Any, metadata: Optional[Dict[str, Any]] = None) -> None: ...

    def get(self, key: str) -> Any | None: ...

    def list_keys(self, prefix: str = "") -> List[str]: ...


def append_operation(
    store: KeyValueStore,
    operation: Dict[str, Any],
    *,
    max_entries: int | None = None,
) -> str:
    """Store ``operation`` under ``log_<id>`` and prepend it to the capped recent log."""

    limit = config.OPERATION_LOG_MAX_ENTRIES if max_entries is None else max_entries
    op_id = str(time.time_ns())
    store.put(f"log_{op_id}", operation)
    recent = store.get(RECENT_LOGS_KEY)
    if not isinstance(recent, list):
        recent = []
    recent.insert(0, {"id": op_id, **operation})
    store.put(RECENT_LOGS_KEY, recent[:limit])
    return op_id


class SqliteKeyValueStore:
    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = Path(db_path or config.DB_PATH)
        self._lock = threading.Lock()
        self._initialised = False

    def get_connection(self) -> sqlite3.Connection:
        """Return a connection; the parent directory is created if missing."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize_schema(self) -> None:
        conn = self.get_connection()
        try:
            with conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS kv_entries (
                        key         TEXT PRIMARY KEY,
                        value       TEXT NOT NULL,
                        metadata    TEXT,
                        updated_at  REAL NOT NULL
                    );
                    """
                )
        finally:
            conn.close()
        self._initialised = True

    def _execute(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                if not self._initialised:
                    self.initialize_schema()
                conn = self.get_connection()
                try:
                    with conn:
                        return list(conn.execute(sql, params).fetchall())
                finally:
                    conn.close()
            except (sqlite3.Error, OSError) as exc:
                raise PersistenceError(f"SQLite error: {exc}") from exc

    def put(self, key: str, value: Any, metadata: Optional[Dict[str, Any]] = None) -> None:
        meta = {**(metadata or {}), "updated": time.time()}
        self._execute(
            """
            INSERT INTO kv_entries (key, value, metadata, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                metadata = excluded.metadata,
                updated_at = excluded.updated_at
            """,
            (key, json.dumps(value, ensure_ascii=False), json.dumps(meta), meta["updated"]),
        )

    def get(self, key: str) -> Any | None:
        rows = self._execute("SELECT value FROM kv_entries WHERE key = ?", (key,))
        if not rows:
            return None
        return json.loads(rows[0]["value"])

    def get_metadata(self, key: str) -> Dict[str, Any] | None:
        rows = self._execute("SELECT metadata FROM kv_entries WHERE key = ?", (key,))
        if not rows or rows[0]["metadata"] is None:
            return None
        return json.loads(rows[0]["metadata"])

    def list_keys(self, prefix: str = "") -> List[str]:
        rows = self._execute(
            "SELECT key FROM kv_entries WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
            (prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%",),
        )
        return [row["key"] for row in rows]

    def delete(self, key: str) -> None:
        self._execute("DELETE FROM kv_entries WHERE key = ?", (key,))

    def ping(self) -> None:
        self._execute("SELECT COUNT(*) FROM kv_entries")


class HttpKeyValueStore:
    def __init__(
        self,
        *,
        account_id: str | None = None,
        namespace_id: str | None = None,
        api_token: str | None = None,
        api_base: str | None = None,
        http_client: Any | None = None,
        timeout: int | None = None,
    ) -> None:
        self.account_id = account_id or config.KV_ACCOUNT_ID
        self.namespace_id = namespace_id or config.KV_NAMESPACE_ID
        self.api_token = api_token or config.KV_API_TOKEN
        self.api_base = (api_base or config.KV_API_BASE).rstrip("/")
        self.timeout = timeout or config.KV_TIMEOUT_SECONDS
        self._http = http_client or requests.Session()

    @property
    def namespace_url(self) -> str:
        return f"{self.api_base}/accounts/{self.account_id}/storage/kv/namespaces/{self.namespace_id}"

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_token}"}

    def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = self._http.request(
                method, url, headers=self._headers(), timeout=self.timeout, **kwargs
            )
        except requests.RequestException as exc:
            raise PersistenceError(f"KV request failed: {exc}") from exc
        return response

    def _raise_for_status(self, response: Any, key: str) -> None:
        status = response.status_code
        if status < 400:
            return
        retryable = status == 429 or status >= 500
        _ranking_event(
            "error",
            phase="persistence",
            key=key,
            http_status=status,
            error_code=classify_http_status(status),
        )
        raise PersistenceError(
            f"KV returned HTTP {status} for {key}: {response.text[:200]}",
            http_status=status,
            retryable=retryable,
        )

    def put(self, key: str, value: Any, metadata: Optional[Dict[str, Any]] = None) -> None:
        meta = {**(metadata or {}), "updated": int(time.time() * 1000)}
        response = self._request(
            "PUT",
            f"{self.namespace_url}/values/{quote(key, safe='')}",
            params={"metadata": json.dumps(meta)},
            data=json.dumps(value, ensure_ascii=False).encode("utf-8"),
        )
        self._raise_for_status(response, key)

    def get(self, key: str) -> Any | None:
        response = self._request("GET", f"{self.namespace_url}/values/{quote(key, safe='')}")
        if response.status_code == 404:
            return None
        self._raise_for_status(response, key)
        try:
            return json.loads(response.text)
        except json.JSONDecodeError:
            return response.text

    def list_keys(self, prefix: str = "") -> List[str]:
        params = {"prefix": prefix} if prefix else {}
        response = self._request("GET", f"{self.namespace_url}/keys", params=params)
        self._raise_for_status(response, f"keys:{prefix}")
        payload = response.json()
        return [item.get("name") for item in payload.get("result") or [] if item.get("name")]

    def ping(self) -> None:
        response = self._request("GET", self.namespace_url)
        self._raise_for_status(response, "namespace")


def build_store() -> KeyValueStore:
    if config.PERSISTENCE_BACKEND == "http":
        return HttpKeyValueStore()
    return SqliteKeyValueStore()


__all__ = [
    "KeyValueStore",
    "SqliteKeyValueStore",
    "HttpKeyValueStore",
    "append_operation",
    "build_store",
    "RECENT_LOGS_KEY",
]
