"""Credential store protocol and its adapters.

Three adapters back the token source chain: an in-process session store,
a best-effort local JSON file, and a persisted SQLite database standing in
for the remote token service.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from repobridge.auth.models import Credential

logger = logging.getLogger(__name__)


@runtime_checkable
class CredentialStore(Protocol):
    """Credentials keyed by (subject, provider)."""

    async def get(self, subject: str, provider: str) -> Credential | None: ...

    async def put(self, subject: str, provider: str, credential: Credential) -> None: ...

    async def mark_invalid(self, subject: str, provider: str) -> None: ...


class MemoryCredentialStore:
    """Session-bound credentials living only as long as the process."""

    def __init__(self, credentials: list[Credential] | None = None) -> None:
        self._data: dict[tuple[str, str], Credential] = {}
        for cred in credentials or []:
            self._data[(cred.subject, cred.provider)] = cred

    async def get(self, subject: str, provider: str) -> Credential | None:
        return self._data.get((subject, provider))

    async def put(self, subject: str, provider: str, credential: Credential) -> None:
        self._data[(subject, provider)] = credential

    async def mark_invalid(self, subject: str, provider: str) -> None:
        cred = self._data.get((subject, provider))
        if cred is not None:
            self._data[(subject, provider)] = cred.with_updates(is_valid=False)

    async def delete(self, subject: str, provider: str) -> None:
        self._data.pop((subject, provider), None)


class JsonFileCredentialStore:
    """Local warm cache in a JSON file.

    Best-effort: I/O and parse failures are logged and read as a miss.
    Never the sole source of truth.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _load(self) -> dict[str, dict]:
        if not self.path.is_file():
            return {}
        try:
            raw = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable token file %s: %s", self.path, e)
            return {}
        return raw if isinstance(raw, dict) else {}

    def _save(self, data: dict[str, dict]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data, indent=2))
            self.path.chmod(0o600)
        except OSError as e:
            logger.warning("Could not write token file %s: %s", self.path, e)

    @staticmethod
    def _key(subject: str, provider: str) -> str:
        return f"{subject}:{provider}"

    async def get(self, subject: str, provider: str) -> Credential | None:
        payload = (await asyncio.to_thread(self._load)).get(self._key(subject, provider))
        if payload is None:
            return None
        try:
            return Credential.model_validate(payload)
        except ValidationError:
            logger.warning("Discarding malformed %s credential in %s", provider, self.path)
            return None

    async def put(self, subject: str, provider: str, credential: Credential) -> None:
        def _sync() -> None:
            data = self._load()
            data[self._key(subject, provider)] = credential.model_dump(mode="json")
            self._save(data)

        await asyncio.to_thread(_sync)

    async def mark_invalid(self, subject: str, provider: str) -> None:
        # A known-bad token is useless as a warm cache entry.
        await self.delete(subject, provider)

    async def delete(self, subject: str, provider: str) -> None:
        def _sync() -> None:
            data = self._load()
            if data.pop(self._key(subject, provider), None) is not None:
                self._save(data)

        await asyncio.to_thread(_sync)


_SCHEMA = """\
CREATE TABLE IF NOT EXISTS credentials (
    subject TEXT NOT NULL,
    provider TEXT NOT NULL,
    access_token TEXT NOT NULL,
    refresh_token TEXT,
    expires_at TEXT,
    is_valid INTEGER NOT NULL DEFAULT 1,
    last_validated_at TEXT,
    username TEXT,
    PRIMARY KEY (subject, provider)
);
"""

_COLUMNS = (
    "subject, provider, access_token, refresh_token, expires_at, "
    "is_valid, last_validated_at, username"
)


class SQLiteCredentialStore:
    """Persisted credential store backed by a local SQLite database.

    Blocking sqlite calls run in a worker thread so the event loop never
    stalls on disk I/O.
    """

    def __init__(self, db_path: str | Path = ".repobridge/credentials.db") -> None:
        path = Path(db_path)
        if str(db_path) != ":memory:":
            path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path) if str(db_path) != ":memory:" else ":memory:"
        self._conn = sqlite3.connect(self.db_path, isolation_level=None, check_same_thread=False)
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)

    @staticmethod
    def _iso(value: datetime | None) -> str | None:
        return value.isoformat() if value else None

    @staticmethod
    def _row_to_credential(row: tuple) -> Credential:
        (subject, provider, token, refresh_token, expires_at,
         is_valid, last_validated_at, username) = row
        return Credential(
            provider=provider,
            subject=subject,
            token=token,
            refresh_token=refresh_token,
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
            is_valid=bool(is_valid),
            last_validated_at=(
                datetime.fromisoformat(last_validated_at) if last_validated_at else None
            ),
            username=username,
        )

    def _get_sync(self, subject: str, provider: str) -> Credential | None:
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM credentials WHERE subject = ? AND provider = ?",
            (subject, provider),
        ).fetchone()
        return self._row_to_credential(row) if row else None

    def _put_sync(self, subject: str, provider: str, cred: Credential) -> None:
        self._conn.execute(
            f"INSERT OR REPLACE INTO credentials ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                subject,
                provider,
                cred.token,
                cred.refresh_token,
                self._iso(cred.expires_at),
                int(cred.is_valid),
                self._iso(cred.last_validated_at),
                cred.username,
            ),
        )

    async def get(self, subject: str, provider: str) -> Credential | None:
        return await asyncio.to_thread(self._get_sync, subject, provider)

    async def put(self, subject: str, provider: str, credential: Credential) -> None:
        await asyncio.to_thread(self._put_sync, subject, provider, credential)

    async def mark_invalid(self, subject: str, provider: str) -> None:
        await asyncio.to_thread(
            self._conn.execute,
            "UPDATE credentials SET is_valid = 0 WHERE subject = ? AND provider = ?",
            (subject, provider),
        )

    async def delete(self, subject: str, provider: str) -> None:
        await asyncio.to_thread(
            self._conn.execute,
            "DELETE FROM credentials WHERE subject = ? AND provider = ?",
            (subject, provider),
        )

    def close(self) -> None:
        self._conn.close()
