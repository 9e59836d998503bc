"""Adapter around :class:`fido2.server.Fido2Server`.

All signature, client data and RP ID hash checks happen inside ``fido2``; this
module turns its inputs and outputs into the types used by the coordinator and
maps every rejection onto :class:`VerificationFailure`.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from fido2 import cbor
from fido2.cose import CoseKey
from fido2.server import Fido2Server
from fido2.utils import websafe_decode
from fido2.webauthn import (
    AttestationConveyancePreference,
    AttestedCredentialData,
    AuthenticationResponse,
    AuthenticatorAttachment,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    PublicKeyCredentialParameters,
    PublicKeyCredentialRpEntity,
    PublicKeyCredentialType,
    PublicKeyCredentialUserEntity,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from .errors import VerificationFailure
from .models import AuthenticatorRecord, UserIdentity, normalize_transports

__all__ = [
    "DEFAULT_ALGORITHMS",
    "DEFAULT_TIMEOUT_MS",
    "VerifiedRegistration",
    "WebAuthnVerifier",
]

logger = logging.getLogger(__name__)

# ES256, EdDSA, RS256
DEFAULT_ALGORITHMS: Tuple[int, ...] = (-7, -8, -257)
DEFAULT_TIMEOUT_MS = 60000


@dataclass(frozen=True)
class VerifiedRegistration:
    credential_id: bytes
    public_key: bytes
    sign_counter: int
    aaguid: bytes
    transports: FrozenSet[AuthenticatorTransport]


def _descriptor(record: AuthenticatorRecord) -> PublicKeyCredentialDescriptor:
    return PublicKeyCredentialDescriptor(
        type=PublicKeyCredentialType.PUBLIC_KEY,
        id=record.credential_id,
        transports=sorted(record.transports) or None,
    )


class WebAuthnVerifier:
    """Issues options and verifies responses for one relying party.

    :param rp_id: The relying party identifier (a host name).
    :param rp_name: Human readable relying party name.
    :param origins: The exact origins the browser may report.
    """

    def __init__(
        self,
        rp_id: str,
        rp_name: str,
        origins: Iterable[str],
        *,
        user_verification: Optional[str] = None,
        resident_key: Optional[str] = None,
        authenticator_attachment: Optional[str] = None,
        algorithms: Sequence[int] = DEFAULT_ALGORITHMS,
        timeout: Optional[int] = DEFAULT_TIMEOUT_MS,
    ) -> None:
        self.origins = frozenset(origin.rstrip("/") for origin in origins)
        if not self.origins:
            raise ValueError("At least one expected origin is required.")

        self.server = Fido2Server(
            PublicKeyCredentialRpEntity(name=rp_name, id=rp_id),
            attestation=AttestationConveyancePreference.NONE,
            verify_origin=self.verify_origin,
        )
        self.server.timeout = timeout

        supported = set(CoseKey.supported_algorithms())
        self.server.allowed_algorithms = [
            PublicKeyCredentialParameters(type=PublicKeyCredentialType.PUBLIC_KEY, alg=alg)
            for alg in algorithms
            if alg in supported
        ]

        self.user_verification = (
            UserVerificationRequirement(user_verification) if user_verification else None
        )
        self.resident_key = ResidentKeyRequirement(resident_key) if resident_key else None
        self.authenticator_attachment = (
            AuthenticatorAttachment(authenticator_attachment) if authenticator_attachment else None
        )

    @property
    def rp_id(self) -> str:
        return self.server.rp.id

    def verify_origin(self, origin: str) -> bool:
        return isinstance(origin, str) and origin.rstrip("/") in self.origins

    def registration_options(
        self,
        identity: UserIdentity,
        existing: Sequence[AuthenticatorRecord] = (),
    ) -> Tuple[Dict[str, Any], Mapping[str, Any], bytes]:
        """Return JSON ready creation options, the verifier state and the challenge."""

        options, state = self.server.register_begin(
            PublicKeyCredentialUserEntity(
                id=identity.id,
                name=identity.name,
                display_name=identity.display_name,
            ),
            [_descriptor(record) for record in existing],
            resident_key_requirement=self.resident_key,
            user_verification=self.user_verification,
            authenticator_attachment=self.authenticator_attachment,
        )
        return dict(options), state, websafe_decode(state["challenge"])

    def verify_registration(
        self, state: Mapping[str, Any], response: Mapping[str, Any]
    ) -> VerifiedRegistration:
        try:
            auth_data = self.server.register_complete(state, response)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Registration response rejected: %s", exc)
            raise VerificationFailure(str(exc) or None) from exc

        credential_data = auth_data.credential_data
        if credential_data is None:
            raise VerificationFailure("The response carries no credential data.")

        raw_response = response.get("response") if isinstance(response, Mapping) else None
        transports = normalize_transports(
            raw_response.get("transports") if isinstance(raw_response, Mapping) else None
        )

        return VerifiedRegistration(
            credential_id=bytes(credential_data.credential_id),
            public_key=cbor.encode(credential_data.public_key),
            sign_counter=auth_data.counter or 0,
            aaguid=bytes(credential_data.aaguid),
            transports=transports,
        )

    def authentication_options(
        self, records: Sequence[AuthenticatorRecord]
    ) -> Tuple[Dict[str, Any], Mapping[str, Any], bytes]:
        descriptors: List[PublicKeyCredentialDescriptor] = [_descriptor(r) for r in records]
        options, state = self.server.authenticate_begin(
            descriptors,
            user_verification=self.user_verification,
        )
        return dict(options), state, websafe_decode(state["challenge"])

    def parse_assertion(self, response: Mapping[str, Any]) -> AuthenticationResponse:
        try:
            return AuthenticationResponse.from_dict(response)
        except Exception as exc:  # pylint: disable=broad-except
            raise VerificationFailure("Malformed authentication response.") from exc

    def verify_authentication(
        self,
        state: Mapping[str, Any],
        record: AuthenticatorRecord,
        assertion: AuthenticationResponse,
    ) -> int:
        """Verify ``assertion`` against ``record`` and return the reported counter."""

        try:
            credential = AttestedCredentialData.create(
                record.aaguid,
                record.credential_id,
                CoseKey.parse(cbor.decode(record.public_key)),
            )
            self.server.authenticate_complete(state, [credential], assertion)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning(
                "Authentication response for %s rejected: %s",
                record.credential_id.hex(),
                exc,
            )
            raise VerificationFailure(str(exc) or None) from exc

        return assertion.response.authenticator_data.counter
