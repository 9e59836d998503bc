"""The WebAuthn registration and authentication ceremonies.

Each ceremony is two requests. The options call issues a challenge and parks
it in the caller's :class:`ChallengeSession`; the verify call consumes it,
whatever the outcome, so a challenge can be answered at most once.
"""
from __future__ import annotations

import logging
import secrets
import time
from typing import Any, Dict, Mapping, Optional, Sequence

from .bridge import IdentityBridge
from .errors import (
    ChallengeExpired,
    CounterReplay,
    InvalidRequest,
    NoAuthenticatorsRegistered,
    NoPendingChallenge,
    NoSuchCredential,
    VerificationFailure,
)
from .models import (
    AuthenticationOutcome,
    AuthenticatorRecord,
    CeremonyKind,
    PendingCeremony,
    RegistrationOutcome,
    UserIdentity,
)
from .sessions import ChallengeSession
from .storage import CredentialStore
from .verifier import WebAuthnVerifier

__all__ = ["CeremonyCoordinator", "USER_HANDLE_LENGTH"]

logger = logging.getLogger(__name__)

USER_HANDLE_LENGTH = 32
_MAX_NAME_LENGTH = 64


class CeremonyCoordinator:
    """Runs the four ceremony steps against a verifier and a credential store.

    :param verifier: Issues options and checks responses.
    :param store: Users and authenticator records.
    :param challenge_ttl: Seconds a challenge stays answerable, ``None`` for
        no limit other than the session lifetime.
    :param bridge: Mints identity provider tokens when set.
    """

    def __init__(
        self,
        verifier: WebAuthnVerifier,
        store: CredentialStore,
        *,
        challenge_ttl: Optional[float] = 300.0,
        bridge: Optional[IdentityBridge] = None,
    ) -> None:
        self.verifier = verifier
        self.store = store
        self.challenge_ttl = challenge_ttl
        self.bridge = bridge

    def resolve_identity(
        self, name: Any, display_name: Any = None, *, create: bool = False
    ) -> Optional[UserIdentity]:
        """Return the user called ``name``, creating it when ``create`` is set."""

        if not isinstance(name, str) or not name.strip():
            raise InvalidRequest("A user name is required.")
        name = name.strip()
        if len(name) > _MAX_NAME_LENGTH:
            raise InvalidRequest("The user name is too long.")

        identity = self.store.find_user(name)
        if identity is not None or not create:
            return identity

        if not isinstance(display_name, str) or not display_name.strip():
            display_name = name
        identity = self.store.add_user(
            UserIdentity(
                id=secrets.token_bytes(USER_HANDLE_LENGTH),
                name=name,
                display_name=display_name.strip()[:_MAX_NAME_LENGTH],
            )
        )
        logger.info("Created user %s", identity.name)
        return identity

    def begin_registration(
        self,
        session: ChallengeSession,
        identity: UserIdentity,
        existing_credentials: Optional[Sequence[AuthenticatorRecord]] = None,
    ) -> Dict[str, Any]:
        if existing_credentials is None:
            existing_credentials = self.store.list_by_owner(identity.id)

        options, state, challenge = self.verifier.registration_options(
            identity, existing_credentials
        )
        session.set_pending(
            PendingCeremony(
                kind=CeremonyKind.REGISTRATION,
                challenge=challenge,
                state=state,
                identity=identity,
            )
        )
        logger.debug(
            "Registration challenge issued for %s (%d existing credentials)",
            identity.name,
            len(existing_credentials),
        )
        return options

    def complete_registration(
        self, session: ChallengeSession, response: Mapping[str, Any]
    ) -> RegistrationOutcome:
        pending = self._take_pending(session, CeremonyKind.REGISTRATION)
        identity = pending.identity

        verified = self.verifier.verify_registration(pending.state, response)
        if self.store.get(verified.credential_id) is not None:
            logger.warning(
                "Credential %s is already registered", verified.credential_id.hex()
            )
            raise VerificationFailure("The credential is already registered.")

        record = AuthenticatorRecord(
            credential_id=verified.credential_id,
            public_key=verified.public_key,
            sign_counter=verified.sign_counter,
            owner=identity.id,
            aaguid=verified.aaguid,
            transports=verified.transports,
            created_at=time.time(),
        )
        self.store.put(record)
        logger.info(
            "Registered credential %s for %s", record.credential_id.hex(), identity.name
        )

        token = self.bridge.mint(identity) if self.bridge is not None else None
        return RegistrationOutcome(record=record, identity=identity, token=token)

    def begin_authentication(
        self, session: ChallengeSession, identity: Optional[UserIdentity]
    ) -> Dict[str, Any]:
        records = self.store.list_by_owner(identity.id) if identity is not None else []
        if not records:
            raise NoAuthenticatorsRegistered()

        options, state, challenge = self.verifier.authentication_options(records)
        session.set_pending(
            PendingCeremony(
                kind=CeremonyKind.AUTHENTICATION,
                challenge=challenge,
                state=state,
                identity=identity,
            )
        )
        logger.debug(
            "Authentication challenge issued for %s (%d credentials)",
            identity.name,
            len(records),
        )
        return options

    def complete_authentication(
        self, session: ChallengeSession, response: Mapping[str, Any]
    ) -> AuthenticationOutcome:
        pending = self._take_pending(session, CeremonyKind.AUTHENTICATION)
        identity = pending.identity

        assertion = self.verifier.parse_assertion(response)
        credential_id = bytes(assertion.raw_id)
        record = self.store.get(credential_id)
        if record is None or record.owner != identity.id:
            logger.warning(
                "Assertion from unknown credential %s for %s",
                credential_id.hex(),
                identity.name,
            )
            raise NoSuchCredential()

        # A stale counter is rejected before, and independently of, signature checks.
        reported = assertion.response.authenticator_data.counter
        if reported <= record.sign_counter:
            logger.warning(
                "Counter for %s did not increase (%d -> %d), possible cloned authenticator",
                credential_id.hex(),
                record.sign_counter,
                reported,
            )
            raise CounterReplay()

        new_counter = self.verifier.verify_authentication(pending.state, record, assertion)
        if not self.store.update_counter(credential_id, record.sign_counter, new_counter):
            logger.warning("Concurrent use of credential %s rejected", credential_id.hex())
            raise CounterReplay()

        session.set_logged_in(identity)
        logger.info("Authenticated %s with credential %s", identity.name, credential_id.hex())

        token = self.bridge.mint(identity) if self.bridge is not None else None
        return AuthenticationOutcome(
            identity=identity,
            credential_id=credential_id,
            sign_counter=new_counter,
            token=token,
        )

    def _take_pending(self, session: ChallengeSession, kind: CeremonyKind) -> PendingCeremony:
        pending = session.take_pending()
        if pending is None:
            raise NoPendingChallenge()
        if pending.kind != kind:
            raise NoPendingChallenge(f"No {kind.value} ceremony is in progress.")
        if pending.is_expired(self.challenge_ttl):
            raise ChallengeExpired()
        return pending
