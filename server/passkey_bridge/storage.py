"""Credential storage backends.

Two interchangeable stores implement the same contract: an in-memory map for
development and tests, and a JSON document kept on disk. Both guard their
state with a lock so the counter update is a compare-and-swap.
"""
from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager, suppress
from typing import Any, Dict, Iterator, List, Mapping, Optional

from fido2.utils import websafe_decode, websafe_encode

from .errors import StoreUnavailable
from .models import AuthenticatorRecord, UserIdentity, normalize_transports

__all__ = [
    "CredentialStore",
    "JsonCredentialStore",
    "MemoryCredentialStore",
    "create_store",
    "record_from_json",
    "record_to_json",
]

logger = logging.getLogger(__name__)


def record_to_json(record: AuthenticatorRecord) -> Dict[str, Any]:
    return {
        "credentialId": websafe_encode(record.credential_id),
        "publicKey": websafe_encode(record.public_key),
        "signCount": record.sign_counter,
        "owner": websafe_encode(record.owner),
        "aaguid": websafe_encode(record.aaguid),
        "transports": sorted(transport.value for transport in record.transports),
        "createdAt": record.created_at,
    }


def record_from_json(data: Mapping[str, Any]) -> AuthenticatorRecord:
    return AuthenticatorRecord(
        credential_id=websafe_decode(data["credentialId"]),
        public_key=websafe_decode(data["publicKey"]),
        sign_counter=int(data.get("signCount", 0)),
        owner=websafe_decode(data["owner"]),
        aaguid=websafe_decode(data.get("aaguid") or websafe_encode(b"\0" * 16)),
        transports=normalize_transports(data.get("transports") or []),
        created_at=float(data.get("createdAt", 0.0)),
    )


def _user_to_json(identity: UserIdentity) -> Dict[str, Any]:
    return identity.to_json()


def _user_from_json(data: Mapping[str, Any]) -> UserIdentity:
    return UserIdentity(
        id=websafe_decode(data["id"]),
        name=data["name"],
        display_name=data.get("displayName") or data["name"],
    )


class CredentialStore(ABC):
    """Users and their authenticator records, keyed by credential id."""

    @abstractmethod
    def put(self, record: AuthenticatorRecord) -> None:
        """Insert or replace a record."""

    @abstractmethod
    def get(self, credential_id: bytes) -> Optional[AuthenticatorRecord]:
        """Return the record for ``credential_id`` or ``None``."""

    @abstractmethod
    def list_by_owner(self, user_id: bytes) -> List[AuthenticatorRecord]:
        """Return every record registered to ``user_id``."""

    @abstractmethod
    def update_counter(self, credential_id: bytes, expected: int, new: int) -> bool:
        """Set the counter to ``new`` if it still equals ``expected``.

        Returns ``False`` when the record is missing or another update got
        there first.
        """

    @abstractmethod
    def find_user(self, name: str) -> Optional[UserIdentity]:
        """Look a user up by user name."""

    @abstractmethod
    def get_user(self, user_id: bytes) -> Optional[UserIdentity]:
        """Look a user up by user handle."""

    @abstractmethod
    def add_user(self, identity: UserIdentity) -> UserIdentity:
        """Persist ``identity`` unless the name is taken.

        Returns the identity stored under that name, which is the existing one
        if another request created it first.
        """


class MemoryCredentialStore(CredentialStore):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: Dict[bytes, AuthenticatorRecord] = {}
        self._users: Dict[bytes, UserIdentity] = {}
        self._names: Dict[str, bytes] = {}

    def put(self, record: AuthenticatorRecord) -> None:
        with self._lock:
            self._records[record.credential_id] = record

    def get(self, credential_id: bytes) -> Optional[AuthenticatorRecord]:
        with self._lock:
            return self._records.get(bytes(credential_id))

    def list_by_owner(self, user_id: bytes) -> List[AuthenticatorRecord]:
        with self._lock:
            return [record for record in self._records.values() if record.owner == user_id]

    def update_counter(self, credential_id: bytes, expected: int, new: int) -> bool:
        with self._lock:
            record = self._records.get(bytes(credential_id))
            if record is None or record.sign_counter != expected:
                return False
            self._records[record.credential_id] = record.with_counter(new)
            return True

    def find_user(self, name: str) -> Optional[UserIdentity]:
        with self._lock:
            user_id = self._names.get(name)
            return self._users.get(user_id) if user_id is not None else None

    def get_user(self, user_id: bytes) -> Optional[UserIdentity]:
        with self._lock:
            return self._users.get(user_id)

    def add_user(self, identity: UserIdentity) -> UserIdentity:
        with self._lock:
            existing = self.find_user(identity.name)
            if existing is not None:
                return existing
            self._users[identity.id] = identity
            self._names[identity.name] = identity.id
            return identity


class JsonCredentialStore(CredentialStore):
    """A single JSON document holding users and credentials.

    The document is re-read on every operation so several worker processes
    can share it. Every operation holds an exclusive ``flock`` on a sidecar
    ``.lock`` file, which makes the counter update a compare-and-swap across
    processes; writes go through a temporary file and ``os.replace``.
    """

    def __init__(self, path: str) -> None:
        self.path = os.path.abspath(path)
        self.lock_path = self.path + ".lock"
        self._lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            try:
                os.makedirs(os.path.dirname(self.path), exist_ok=True)
                lock_file = open(self.lock_path, "a", encoding="utf-8")
            except OSError as exc:
                logger.error("Unable to open lock file %s: %s", self.lock_path, exc)
                raise StoreUnavailable() from exc

            with lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                self._depth = 1
                try:
                    yield
                finally:
                    self._depth = 0
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _load(self) -> Dict[str, Dict[str, Any]]:
        try:
            with open(self.path, "r", encoding="utf-8") as document_file:
                document = json.load(document_file)
        except FileNotFoundError:
            return {"users": {}, "credentials": {}}
        except (OSError, ValueError) as exc:
            logger.error("Unable to read credential document %s: %s", self.path, exc)
            raise StoreUnavailable() from exc

        if not isinstance(document, dict):
            raise StoreUnavailable("The credential document is corrupt.")
        document.setdefault("users", {})
        document.setdefault("credentials", {})
        return document

    def _save(self, document: Mapping[str, Any]) -> None:
        try:
            fd, temp_path = tempfile.mkstemp(
                prefix=".credentials-", dir=os.path.dirname(self.path)
            )
        except OSError as exc:
            logger.error("Unable to write credential document %s: %s", self.path, exc)
            raise StoreUnavailable() from exc

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as temp_file:
                json.dump(document, temp_file, indent=2, sort_keys=True)
            os.replace(temp_path, self.path)
        except BaseException as exc:
            with suppress(OSError):
                os.unlink(temp_path)
            if isinstance(exc, OSError):
                logger.error("Unable to write credential document %s: %s", self.path, exc)
                raise StoreUnavailable() from exc
            raise

    def _decode_records(self, document: Mapping[str, Any]) -> List[AuthenticatorRecord]:
        try:
            return [record_from_json(entry) for entry in document["credentials"].values()]
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreUnavailable("The credential document is corrupt.") from exc

    def put(self, record: AuthenticatorRecord) -> None:
        with self._transaction():
            document = self._load()
            document["credentials"][websafe_encode(record.credential_id)] = record_to_json(record)
            self._save(document)

    def get(self, credential_id: bytes) -> Optional[AuthenticatorRecord]:
        with self._transaction():
            entry = self._load()["credentials"].get(websafe_encode(bytes(credential_id)))
        if entry is None:
            return None
        try:
            return record_from_json(entry)
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreUnavailable("The credential document is corrupt.") from exc

    def list_by_owner(self, user_id: bytes) -> List[AuthenticatorRecord]:
        with self._transaction():
            records = self._decode_records(self._load())
        return [record for record in records if record.owner == user_id]

    def update_counter(self, credential_id: bytes, expected: int, new: int) -> bool:
        key = websafe_encode(bytes(credential_id))
        with self._transaction():
            document = self._load()
            entry = document["credentials"].get(key)
            if entry is None or int(entry.get("signCount", 0)) != expected:
                return False
            entry["signCount"] = new
            self._save(document)
            return True

    def find_user(self, name: str) -> Optional[UserIdentity]:
        with self._transaction():
            users = self._load()["users"]
        for entry in users.values():
            if entry.get("name") == name:
                return _user_from_json(entry)
        return None

    def get_user(self, user_id: bytes) -> Optional[UserIdentity]:
        with self._transaction():
            entry = self._load()["users"].get(websafe_encode(user_id))
        return _user_from_json(entry) if entry is not None else None

    def add_user(self, identity: UserIdentity) -> UserIdentity:
        with self._transaction():
            existing = self.find_user(identity.name)
            if existing is not None:
                return existing
            document = self._load()
            document["users"][websafe_encode(identity.id)] = _user_to_json(identity)
            self._save(document)
            return identity


def create_store(location: Optional[str]) -> CredentialStore:
    """Build the store named by the ``CREDENTIAL_STORE`` setting."""

    if not location or location.strip().lower() == "memory":
        return MemoryCredentialStore()
    return JsonCredentialStore(location.strip())
