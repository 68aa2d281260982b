"""
Credential Storage

Persists exactly one credential record under a fixed storage key. Every
backend implements the same three coroutines: `save`, `load` and `delete`.

Loss or corruption of stored data is never fatal: a record that cannot be
read, decrypted or validated loads as `None` and is reported to Sentry. Write
failures propagate to the caller, which decides whether they matter (the
orchestrator logs them and carries on with the in-memory transition).

Backends:
- MemoryCredentialStore: process-local, mostly for tests and short-lived tools
- EncryptedFileCredentialStore: Fernet-encrypted JSON on disk
- RedisCredentialStore: single key in Redis, for services sharing a credential
- ReplicatingCredentialStore: combines the above with ordered reads and
  replication of a hit into the write backends that missed it
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

import redis.asyncio as redis
from redis.exceptions import RedisError
import sentry_sdk
from cryptography.fernet import Fernet, InvalidToken
from pydantic import ValidationError

from social.graze.spid.app.config import STORE_FILE, STORE_MEMORY, STORE_REDIS, Settings
from social.graze.spid.model.credential import Credential

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    async def save(self, credential: Credential) -> None: ...

    async def load(self) -> Optional[Credential]: ...

    async def delete(self) -> None: ...


def _decode_record(data: bytes | str, source: str) -> Optional[Credential]:
    try:
        return Credential.deserialize(data)
    except (ValidationError, ValueError) as e:
        sentry_sdk.capture_exception(e)
        logger.warning("Discarding unreadable credential record from %s", source)
        return None


class MemoryCredentialStore:
    def __init__(self) -> None:
        self._record: Optional[str] = None

    async def save(self, credential: Credential) -> None:
        self._record = credential.serialize()

    async def load(self) -> Optional[Credential]:
        if self._record is None:
            return None
        return _decode_record(self._record, "memory")

    async def delete(self) -> None:
        self._record = None


class EncryptedFileCredentialStore:
    """
    Keeps the credential in a Fernet-encrypted file.

    The file is written to a temporary sibling and renamed into place so a
    crash mid-write leaves either the old or the new record. File permissions
    are restricted to the owner.
    """

    def __init__(self, path: Path, encryption_key: Fernet) -> None:
        self._path = Path(path).expanduser()
        self._fernet = encryption_key

    @property
    def path(self) -> Path:
        return self._path

    async def save(self, credential: Credential) -> None:
        token = self._fernet.encrypt(credential.serialize().encode("utf-8"))
        await asyncio.to_thread(self._write, token)

    def _write(self, token: bytes) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(f"{self._path.name}.tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as fl:
            fl.write(token)
        os.replace(tmp_path, self._path)

    async def load(self) -> Optional[Credential]:
        try:
            token = await asyncio.to_thread(self._path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as e:
            sentry_sdk.capture_exception(e)
            logger.warning("Unable to read credential file %s", self._path)
            return None

        try:
            data = self._fernet.decrypt(token)
        except InvalidToken as e:
            sentry_sdk.capture_exception(e)
            logger.warning("Unable to decrypt credential file %s", self._path)
            return None

        return _decode_record(data, str(self._path))

    async def delete(self) -> None:
        await asyncio.to_thread(self._path.unlink, True)


class RedisCredentialStore:
    def __init__(self, redis_client: redis.Redis, storage_key: str) -> None:
        self._redis = redis_client
        self._storage_key = storage_key

    async def save(self, credential: Credential) -> None:
        await self._redis.set(self._storage_key, credential.serialize())

    async def load(self) -> Optional[Credential]:
        try:
            data = await self._redis.get(self._storage_key)
        except RedisError as e:
            sentry_sdk.capture_exception(e)
            logger.warning("Unable to read credential from redis")
            return None
        if data is None:
            return None
        return _decode_record(data, f"redis:{self._storage_key}")

    async def delete(self) -> None:
        await self._redis.delete(self._storage_key)


class ReplicatingCredentialStore:
    """
    Fans a single credential record out over several backends.

    Reads go through `read_backends` in order and stop at the first hit. The
    hit is then copied into every write backend other than the one it came
    from, so a credential migrates into newly added backends on first use.
    Saves go to every write backend; deletes clear every known backend.
    """

    def __init__(
        self,
        read_backends: Sequence[CredentialStore],
        write_backends: Sequence[CredentialStore],
    ) -> None:
        self._read_backends = list(read_backends)
        self._write_backends = list(write_backends)

    @property
    def backends(self) -> List[CredentialStore]:
        known: List[CredentialStore] = []
        for backend in [*self._read_backends, *self._write_backends]:
            if not any(backend is b for b in known):
                known.append(backend)
        return known

    async def load(self) -> Optional[Credential]:
        credential: Optional[Credential] = None
        source: Optional[CredentialStore] = None
        for backend in self._read_backends:
            credential = await backend.load()
            if credential is not None:
                source = backend
                break

        if credential is None:
            return None

        for backend in self._write_backends:
            if backend is source:
                continue
            try:
                await backend.save(credential)
            except Exception as e:
                sentry_sdk.capture_exception(e)
                logger.exception("Error replicating credential")

        return credential

    async def save(self, credential: Credential) -> None:
        errors = []
        for backend in self._write_backends:
            try:
                await backend.save(credential)
            except Exception as e:
                errors.append(e)
                sentry_sdk.capture_exception(e)
                logger.exception("Error saving credential")
        if errors and len(errors) == len(self._write_backends):
            raise errors[0]

    async def delete(self) -> None:
        errors = []
        for backend in self.backends:
            try:
                await backend.delete()
            except Exception as e:
                errors.append(e)
                sentry_sdk.capture_exception(e)
                logger.exception("Error deleting credential")
        if errors:
            raise errors[0]


def create_credential_store(
    settings: Settings, redis_client: Optional[redis.Redis] = None
) -> CredentialStore:
    """
    Build the store described by `settings.credential_stores`.

    A single backend is returned as-is; several are wrapped in a
    ReplicatingCredentialStore that reads and writes them in the configured
    order.
    """
    backends: List[CredentialStore] = []
    for name in settings.credential_stores:
        if name == STORE_MEMORY:
            backends.append(MemoryCredentialStore())
        elif name == STORE_FILE:
            if settings.encryption_key is None:
                raise ValueError("the file credential store requires encryption_key")
            backends.append(
                EncryptedFileCredentialStore(
                    settings.credential_file, settings.encryption_key
                )
            )
        elif name == STORE_REDIS:
            if redis_client is None:
                redis_client = redis.Redis.from_url(str(settings.redis_dsn))
            backends.append(RedisCredentialStore(redis_client, settings.storage_key))

    if not backends:
        return MemoryCredentialStore()
    if len(backends) == 1:
        return backends[0]
    return ReplicatingCredentialStore(backends, backends)
