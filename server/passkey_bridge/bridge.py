"""Exchange a verified local identity for a Firebase custom sign-in token.

A custom token is an RS256 JWT signed with the private key of a Google service
account. The client passes it to ``signInWithCustomToken``; Firebase creates
the user on first use and signs in the existing user afterwards.
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Mapping, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fido2.utils import websafe_encode

from .errors import BridgeUnavailable
from .models import UserIdentity

__all__ = ["FIREBASE_AUDIENCE", "IdentityBridge", "MAX_TOKEN_TTL"]

logger = logging.getLogger(__name__)

FIREBASE_AUDIENCE = (
    "https://identitytoolkit.googleapis.com/google.identity.identitytoolkit.v1.IdentityToolkit"
)
MAX_TOKEN_TTL = 3600
_ALGORITHM = "RS256"


class IdentityBridge:
    """Mint custom tokens for one service account.

    :param client_email: The service account e-mail, used as ``iss`` and ``sub``.
    :param private_key: The service account RSA private key.
    :param key_id: Optional ``private_key_id`` placed in the ``kid`` header.
    :param ttl: Token lifetime in seconds, at most one hour.
    """

    def __init__(
        self,
        client_email: str,
        private_key: rsa.RSAPrivateKey,
        *,
        key_id: Optional[str] = None,
        ttl: int = MAX_TOKEN_TTL,
    ) -> None:
        if not client_email:
            raise ValueError("A service account e-mail is required.")
        if not 0 < ttl <= MAX_TOKEN_TTL:
            raise ValueError(f"Token lifetime must be between 1 and {MAX_TOKEN_TTL} seconds.")
        self.client_email = client_email
        self.private_key = private_key
        self.key_id = key_id
        self.ttl = ttl

    @classmethod
    def from_service_account_info(
        cls, info: Mapping[str, Any], *, ttl: int = MAX_TOKEN_TTL
    ) -> "IdentityBridge":
        try:
            private_key = serialization.load_pem_private_key(
                info["private_key"].encode("utf-8"), password=None
            )
            client_email = info["client_email"]
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError("Invalid service account credentials.") from exc
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise ValueError("Service account key must be an RSA key.")
        return cls(client_email, private_key, key_id=info.get("private_key_id"), ttl=ttl)

    @classmethod
    def from_service_account_file(cls, path: str, *, ttl: int = MAX_TOKEN_TTL) -> "IdentityBridge":
        with open(path, "r", encoding="utf-8") as account_file:
            info = json.load(account_file)
        return cls.from_service_account_info(info, ttl=ttl)

    @staticmethod
    def uid_for(identity: UserIdentity) -> str:
        # Firebase uids are at most 128 characters; 32 byte handles encode to 43.
        return websafe_encode(identity.id)

    def mint(self, identity: UserIdentity, claims: Optional[Mapping[str, Any]] = None) -> str:
        issued_at = int(time.time())
        payload: Dict[str, Any] = {
            "iss": self.client_email,
            "sub": self.client_email,
            "aud": FIREBASE_AUDIENCE,
            "iat": issued_at,
            "exp": issued_at + self.ttl,
            "uid": self.uid_for(identity),
        }
        if claims:
            payload["claims"] = dict(claims)

        headers = {"kid": self.key_id} if self.key_id else None
        try:
            token = jwt.encode(payload, self.private_key, algorithm=_ALGORITHM, headers=headers)
        except (jwt.PyJWTError, TypeError, ValueError) as exc:
            logger.error("Unable to mint custom token for %s: %s", identity.name, exc)
            raise BridgeUnavailable() from exc

        logger.info("Minted custom token for %s", identity.name)
        return token
