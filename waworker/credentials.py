from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Mapping, Optional


LOGGER = logging.getLogger("waworker.credentials")

CREDS_FILENAME = "creds.json"
SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")


class CredentialStoreError(Exception):
    """Raised when stored credentials cannot be read, written or removed."""


class InvalidSessionIdError(ValueError):
    """Raised when a session id cannot be mapped to a storage directory."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"invalid_session_id: {session_id!r}")
        self.session_id = session_id


def is_valid_session_id(session_id: Any) -> bool:
    return isinstance(session_id, str) and bool(SESSION_ID_RE.match(session_id))


def validate_session_id(session_id: Any) -> str:
    if not is_valid_session_id(session_id):
        raise InvalidSessionIdError(str(session_id))
    return session_id


class FileCredentialStore:
    """Per-session credential blobs kept as ``<root>/<session_id>/creds.json``.

    Writes for the same session are serialized: every ``save`` takes a
    generation number when it is called and a queued write is skipped once a
    newer generation exists, so the file always ends up holding the blob of
    the most recent call.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._issued: Dict[str, int] = {}
        self._users: Dict[str, int] = {}

    @property
    def root(self) -> Path:
        return self._root

    def session_dir(self, session_id: str) -> Path:
        validate_session_id(session_id)
        path = (self._root / session_id).resolve()
        if path.parent != self._root.resolve():
            raise InvalidSessionIdError(session_id)
        return path

    def _creds_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / CREDS_FILENAME

    @contextlib.asynccontextmanager
    async def _locked(self, session_id: str) -> AsyncIterator[None]:
        """Hold the per-id lock; bookkeeping for ``session_id`` is dropped once idle."""

        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        self._users[session_id] = self._users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._users[session_id] - 1
            if remaining:
                self._users[session_id] = remaining
            else:
                del self._users[session_id]
                self._locks.pop(session_id, None)
                self._issued.pop(session_id, None)

    @staticmethod
    async def _run_to_completion(func: Callable[..., Any], *args: Any) -> Any:
        # A worker thread cannot be interrupted, so a cancelled caller keeps
        # the lock until the file operation has really finished.
        work = asyncio.ensure_future(asyncio.to_thread(func, *args))
        try:
            return await asyncio.shield(work)
        except asyncio.CancelledError:
            await asyncio.wait({work})
            if not work.cancelled() and work.exception() is not None:
                LOGGER.warning(
                    "stage=creds_io_failed_after_cancel error=%s", work.exception()
                )
            raise

    def exists(self, session_id: str) -> bool:
        if not is_valid_session_id(session_id):
            return False
        try:
            return self._creds_path(session_id).is_file()
        except (InvalidSessionIdError, OSError):
            return False

    def list_ids(self) -> list[str]:
        try:
            children = sorted(self._root.iterdir())
        except OSError as exc:
            LOGGER.warning("stage=list_sessions_failed root=%s error=%s", self._root, exc)
            return []
        result = []
        for child in children:
            if not child.is_dir() or not is_valid_session_id(child.name):
                continue
            if (child / CREDS_FILENAME).is_file():
                result.append(child.name)
        return result

    async def load(self, session_id: str) -> Optional[Dict[str, Any]]:
        path = self._creds_path(session_id)
        async with self._locked(session_id):
            return await self._run_to_completion(self._read, session_id, path)

    @staticmethod
    def _read(session_id: str, path: Path) -> Optional[Dict[str, Any]]:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CredentialStoreError(f"read_failed session_id={session_id}: {exc}") from exc
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise CredentialStoreError(f"corrupted session_id={session_id}: {exc}") from exc
        if not isinstance(data, dict):
            raise CredentialStoreError(f"corrupted session_id={session_id}: not an object")
        return data

    async def save(self, session_id: str, credentials: Mapping[str, Any]) -> bool:
        """Persist ``credentials``; returns ``False`` when a newer save superseded it."""

        path = self._creds_path(session_id)
        payload = json.dumps(dict(credentials), ensure_ascii=False, sort_keys=True)
        generation = self._issued.get(session_id, 0) + 1
        self._issued[session_id] = generation
        async with self._locked(session_id):
            if self._issued.get(session_id, 0) > generation:
                LOGGER.debug(
                    "stage=creds_save_skipped session_id=%s generation=%s", session_id, generation
                )
                return False
            await self._run_to_completion(self._write, session_id, path, payload)
        return True

    @staticmethod
    def _write(session_id: str, path: Path, payload: str) -> None:
        tmp_path = path.with_name(f".{CREDS_FILENAME}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload, encoding="utf-8")
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise CredentialStoreError(f"write_failed session_id={session_id}: {exc}") from exc

    async def delete(self, session_id: str) -> bool:
        """Remove the session directory; saves queued before the call are dropped."""

        directory = self.session_dir(session_id)
        async with self._locked(session_id):
            self._issued[session_id] = self._issued.get(session_id, 0) + 1
            removed = await self._run_to_completion(self._remove_tree, session_id, directory)
        return removed

    @staticmethod
    def _remove_tree(session_id: str, directory: Path) -> bool:
        if not directory.exists():
            return False
        try:
            shutil.rmtree(directory)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise CredentialStoreError(f"delete_failed session_id={session_id}: {exc}") from exc
        return True


__all__ = [
    "CREDS_FILENAME",
    "CredentialStoreError",
    "FileCredentialStore",
    "InvalidSessionIdError",
    "is_valid_session_id",
    "validate_session_id",
]
