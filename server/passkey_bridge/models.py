"""Data types shared by the ceremony coordinator, stores and routes."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional

from fido2.utils import websafe_encode
from fido2.webauthn import AuthenticatorTransport

__all__ = [
    "AuthenticationOutcome",
    "AuthenticatorRecord",
    "CeremonyKind",
    "PendingCeremony",
    "RegistrationOutcome",
    "SUPPORTED_TRANSPORTS",
    "UserIdentity",
    "normalize_transports",
]


SUPPORTED_TRANSPORTS: FrozenSet[AuthenticatorTransport] = frozenset(
    {
        AuthenticatorTransport.INTERNAL,
        AuthenticatorTransport.USB,
        AuthenticatorTransport.NFC,
        AuthenticatorTransport.BLE,
        AuthenticatorTransport.HYBRID,
    }
)


def normalize_transports(raw: Any) -> FrozenSet[AuthenticatorTransport]:
    """Keep the recognised transport hints of a client supplied list."""

    if not isinstance(raw, Iterable) or isinstance(raw, (str, bytes)):
        return frozenset()

    transports = set()
    for value in raw:
        if not isinstance(value, str):
            continue
        # Unknown values map to None.
        transport = AuthenticatorTransport(value.strip().lower())
        if transport in SUPPORTED_TRANSPORTS:
            transports.add(transport)
    return frozenset(transports)


class CeremonyKind(str, Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


@dataclass(frozen=True)
class UserIdentity:
    """A user known to the relying party.

    ``id`` is the WebAuthn user handle. It is assigned once and never changes,
    since every credential of the user is bound to it.
    """

    id: bytes
    name: str
    display_name: str

    def to_json(self) -> Dict[str, str]:
        return {
            "id": websafe_encode(self.id),
            "name": self.name,
            "displayName": self.display_name,
        }


@dataclass(frozen=True)
class AuthenticatorRecord:
    """A registered public key credential."""

    credential_id: bytes
    public_key: bytes
    sign_counter: int
    owner: bytes
    aaguid: bytes = b"\0" * 16
    transports: FrozenSet[AuthenticatorTransport] = frozenset()
    created_at: float = field(default_factory=time.time)

    def with_counter(self, counter: int) -> "AuthenticatorRecord":
        return AuthenticatorRecord(
            credential_id=self.credential_id,
            public_key=self.public_key,
            sign_counter=counter,
            owner=self.owner,
            aaguid=self.aaguid,
            transports=self.transports,
            created_at=self.created_at,
        )


@dataclass(frozen=True)
class PendingCeremony:
    kind: CeremonyKind
    challenge: bytes
    state: Mapping[str, Any]
    identity: UserIdentity
    issued_at: float = field(default_factory=time.monotonic)

    def is_expired(self, ttl: Optional[float], now: Optional[float] = None) -> bool:
        if ttl is None:
            return False
        current = time.monotonic() if now is None else now
        return current - self.issued_at > ttl


@dataclass(frozen=True)
class RegistrationOutcome:
    record: AuthenticatorRecord
    identity: UserIdentity
    token: Optional[str] = None


@dataclass(frozen=True)
class AuthenticationOutcome:
    identity: UserIdentity
    credential_id: bytes
    sign_counter: int
    token: Optional[str] = None
