"""
Persisted client state: a small JSON document with well-known keys.

Several processes (dashboards, CLIs) may share one state file the way browser
tabs share local storage. Writes are atomic; `poll()`/`watch()` detect changes
made by other processes and notify subscribers with the changed keys, like the
browser storage event (a process is never notified of its own writes).
"""

import asyncio
import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

AUTH_SESSION_KEY = "auth_session"
AUTH_USER_KEY = "auth_user"
MFA_KEY = "mfa"

AUTH_KEYS: frozenset[str] = frozenset({AUTH_SESSION_KEY, AUTH_USER_KEY})

StateListener = Callable[[frozenset[str]], None]


class LocalStateStore:
    """Key/value JSON store backed by one file."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._listeners: list[StateListener] = []
        self._signature = self._stat()
        self._data = self._read()

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str) -> Any | None:
        with self._lock:
            value = self._data.get(key)
        return json.loads(json.dumps(value)) if value is not None else None

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = dict(self._data)
            data[key] = value
            self._write(data)

    def remove(self, *keys: str) -> None:
        with self._lock:
            if not any(k in self._data for k in keys):
                return
            data = {k: v for k, v in self._data.items() if k not in keys}
            self._write(data)

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register listener for external changes; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def poll(self) -> frozenset[str]:
        """Reload the file if another process changed it; notify and return the changed keys."""
        with self._lock:
            signature = self._stat()
            if signature == self._signature:
                return frozenset()
            fresh = self._read()
            changed = frozenset(
                k for k in set(fresh) | set(self._data) if fresh.get(k) != self._data.get(k)
            )
            self._data = fresh
            self._signature = signature
        if changed:
            for listener in list(self._listeners):
                try:
                    listener(changed)
                except Exception:
                    logger.exception("State listener failed", extra={"keys": sorted(changed)})
        return changed

    async def watch(self, interval: float, stop: asyncio.Event | None = None) -> None:
        """Poll until stop is set (or forever)."""
        while stop is None or not stop.is_set():
            self.poll()
            if stop is None:
                await asyncio.sleep(interval)
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def _stat(self) -> tuple[int, int] | None:
        try:
            st = self._path.stat()
        except FileNotFoundError:
            return None
        return (st.st_mtime_ns, st.st_size)

    def _read(self) -> dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            logger.warning("Client state file is corrupt; treating as empty", extra={"path": str(self._path)})
            return {}
        if not isinstance(data, dict):
            logger.warning("Client state file is not an object; treating as empty", extra={"path": str(self._path)})
            return {}
        return data

    def _write(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".state-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, sort_keys=True)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        self._data = data
        self._signature = self._stat()
