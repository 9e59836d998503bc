"""Failures raised while running a WebAuthn ceremony.

Every failure is terminal for the ceremony attempt. The client has to start
again from the options endpoint.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "BridgeUnavailable",
    "CeremonyError",
    "ChallengeExpired",
    "CounterReplay",
    "InvalidRequest",
    "NoAuthenticatorsRegistered",
    "NoPendingChallenge",
    "NoSuchCredential",
    "StoreUnavailable",
    "VerificationFailure",
]


class CeremonyError(Exception):
    kind = "ceremony_error"
    status_code = 400
    default_message = "The ceremony could not be completed."

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_json(self) -> Dict[str, Any]:
        return {"verified": False, "error": self.kind, "message": self.message}


class InvalidRequest(CeremonyError):
    kind = "invalid_request"
    default_message = "The request body is invalid."


class NoPendingChallenge(CeremonyError):
    kind = "no_pending_challenge"
    default_message = "No ceremony is in progress for this session."


class ChallengeExpired(NoPendingChallenge):
    kind = "challenge_expired"
    default_message = "The challenge has expired."


class NoSuchCredential(CeremonyError):
    kind = "no_such_credential"
    status_code = 404
    default_message = "The credential is not registered."


class NoAuthenticatorsRegistered(CeremonyError):
    kind = "no_authenticators_registered"
    status_code = 404
    default_message = "No authenticator is registered for this user."


class CounterReplay(CeremonyError):
    kind = "counter_replay"
    status_code = 401
    default_message = "The signature counter did not increase."


class VerificationFailure(CeremonyError):
    kind = "verification_failure"
    status_code = 401
    default_message = "The authenticator response could not be verified."


class StoreUnavailable(CeremonyError):
    kind = "store_unavailable"
    status_code = 503
    default_message = "The credential store is unavailable."


class BridgeUnavailable(CeremonyError):
    kind = "bridge_unavailable"
    status_code = 502
    default_message = "The identity provider token could not be created."
