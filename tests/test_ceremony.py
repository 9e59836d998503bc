"""Registration and authentication ceremonies driven by a software authenticator."""

import dataclasses
import os

import jwt
import pytest
from fido2.utils import websafe_decode, websafe_encode

from passkey_bridge.bridge import FIREBASE_AUDIENCE
from passkey_bridge.ceremony import CeremonyCoordinator
from passkey_bridge.errors import (
    ChallengeExpired,
    CounterReplay,
    InvalidRequest,
    NoAuthenticatorsRegistered,
    NoPendingChallenge,
    NoSuchCredential,
    VerificationFailure,
)
from passkey_bridge.models import CeremonyKind
from passkey_bridge.storage import MemoryCredentialStore

from .authenticator import SoftwareAuthenticator
from .conftest import ORIGIN, SERVICE_ACCOUNT_EMAIL


def _register(coordinator, challenge_session, authenticator, name="alice"):
    identity = coordinator.resolve_identity(name, create=True)
    options = coordinator.begin_registration(challenge_session, identity)
    outcome = coordinator.complete_registration(challenge_session, authenticator.create(options))
    return identity, outcome.record.credential_id


def test_registration_round_trip(coordinator, sessions, store, authenticator):
    challenge_session = sessions.get("session-1")
    identity = coordinator.resolve_identity("alice", "Alice Liddell", create=True)

    options = coordinator.begin_registration(challenge_session, identity)
    pending = challenge_session.get_pending()
    assert pending.kind is CeremonyKind.REGISTRATION
    assert websafe_decode(options["publicKey"]["challenge"]) == pending.challenge
    assert options["publicKey"]["user"]["name"] == "alice"
    assert options["publicKey"]["user"]["displayName"] == "Alice Liddell"

    outcome = coordinator.complete_registration(challenge_session, authenticator.create(options))

    stored = store.get(outcome.record.credential_id)
    assert stored == outcome.record
    assert stored.owner == identity.id
    assert stored.sign_counter == 0
    assert {transport.value for transport in stored.transports} == {"internal", "hybrid"}
    assert outcome.token is None
    assert challenge_session.get_pending() is None


def test_registration_excludes_existing_credentials(coordinator, sessions, authenticator):
    challenge_session = sessions.get("session-1")
    identity, credential_id = _register(coordinator, challenge_session, authenticator)

    options = coordinator.begin_registration(challenge_session, identity)

    excluded = [
        websafe_decode(descriptor["id"])
        for descriptor in options["publicKey"]["excludeCredentials"]
    ]
    assert excluded == [credential_id]


def test_registration_with_other_challenge_fails(coordinator, sessions, store, authenticator):
    challenge_session = sessions.get("session-1")
    identity = coordinator.resolve_identity("alice", create=True)
    options = coordinator.begin_registration(challenge_session, identity)

    forged = authenticator.create(options, challenge=websafe_encode(os.urandom(32)))
    with pytest.raises(VerificationFailure):
        coordinator.complete_registration(challenge_session, forged)

    assert store.list_by_owner(identity.id) == []
    # The challenge is spent even though verification failed.
    with pytest.raises(NoPendingChallenge):
        coordinator.complete_registration(challenge_session, authenticator.create(options))


def test_registration_from_wrong_origin_fails(coordinator, sessions, authenticator):
    challenge_session = sessions.get("session-1")
    identity = coordinator.resolve_identity("alice", create=True)
    options = coordinator.begin_registration(challenge_session, identity)

    with pytest.raises(VerificationFailure):
        coordinator.complete_registration(
            challenge_session, authenticator.create(options, origin="https://evil.example")
        )


def test_registration_without_options_fails(coordinator, sessions, authenticator):
    options = {
        "publicKey": {
            "challenge": websafe_encode(os.urandom(32)),
            "rp": {"id": "example.com"},
            "user": {"id": websafe_encode(os.urandom(32))},
        }
    }
    with pytest.raises(NoPendingChallenge):
        coordinator.complete_registration(sessions.get("session-1"), authenticator.create(options))


def test_registration_completes_at_most_once(coordinator, sessions, authenticator):
    challenge_session = sessions.get("session-1")
    identity = coordinator.resolve_identity("alice", create=True)
    options = coordinator.begin_registration(challenge_session, identity)
    response = authenticator.create(options)

    coordinator.complete_registration(challenge_session, response)
    with pytest.raises(NoPendingChallenge):
        coordinator.complete_registration(challenge_session, response)


def test_new_options_replace_the_pending_challenge(coordinator, sessions, store, authenticator):
    challenge_session = sessions.get("session-1")
    identity = coordinator.resolve_identity("alice", create=True)
    first_options = coordinator.begin_registration(challenge_session, identity)
    second_options = coordinator.begin_registration(challenge_session, identity)
    assert first_options["publicKey"]["challenge"] != second_options["publicKey"]["challenge"]

    with pytest.raises(VerificationFailure):
        coordinator.complete_registration(challenge_session, authenticator.create(first_options))
    with pytest.raises(NoPendingChallenge):
        coordinator.complete_registration(challenge_session, authenticator.create(second_options))
    assert store.list_by_owner(identity.id) == []


def test_challenge_is_bound_to_its_session(coordinator, sessions, authenticator):
    identity = coordinator.resolve_identity("alice", create=True)
    options = coordinator.begin_registration(sessions.get("session-1"), identity)

    with pytest.raises(NoPendingChallenge):
        coordinator.complete_registration(sessions.get("session-2"), authenticator.create(options))


def test_duplicate_credential_id_is_rejected(coordinator, sessions, store, authenticator):
    challenge_session = sessions.get("session-1")
    identity, credential_id = _register(coordinator, challenge_session, authenticator)
    original = store.get(credential_id)

    options = coordinator.begin_registration(challenge_session, identity, existing_credentials=[])
    with pytest.raises(VerificationFailure):
        coordinator.complete_registration(
            challenge_session, authenticator.create(options, credential_id=credential_id)
        )

    assert store.get(credential_id) == original


def test_two_authenticators_are_each_authenticable(coordinator, sessions, store):
    challenge_session = sessions.get("session-1")
    phone = SoftwareAuthenticator(ORIGIN, transports=["hybrid"])
    key = SoftwareAuthenticator(ORIGIN, transports=["usb", "nfc"])

    identity, phone_id = _register(coordinator, challenge_session, phone)
    _, key_id = _register(coordinator, challenge_session, key)

    records = store.list_by_owner(identity.id)
    assert sorted(record.credential_id for record in records) == sorted([phone_id, key_id])

    for device, credential_id in ((phone, phone_id), (key, key_id)):
        options = coordinator.begin_authentication(challenge_session, identity)
        allowed = {
            websafe_decode(descriptor["id"])
            for descriptor in options["publicKey"]["allowCredentials"]
        }
        assert allowed == {phone_id, key_id}

        outcome = coordinator.complete_authentication(challenge_session, device.get(options))
        assert outcome.credential_id == credential_id
        assert outcome.sign_counter == 1


def test_authentication_without_authenticators_issues_no_challenge(coordinator, sessions):
    challenge_session = sessions.get("session-1")
    alice = coordinator.resolve_identity("alice", create=True)

    with pytest.raises(NoAuthenticatorsRegistered):
        coordinator.begin_authentication(challenge_session, alice)
    assert challenge_session.get_pending() is None

    with pytest.raises(NoAuthenticatorsRegistered):
        coordinator.begin_authentication(challenge_session, None)


def test_failed_authentication_options_keep_previous_challenge(coordinator, sessions):
    challenge_session = sessions.get("session-1")
    alice = coordinator.resolve_identity("alice", create=True)
    coordinator.begin_registration(challenge_session, alice)
    pending = challenge_session.get_pending()

    with pytest.raises(NoAuthenticatorsRegistered):
        coordinator.begin_authentication(challenge_session, alice)
    assert challenge_session.get_pending() is pending


def test_authentication_logs_in_and_advances_counter(coordinator, sessions, store, authenticator):
    challenge_session = sessions.get("session-1")
    identity, credential_id = _register(coordinator, challenge_session, authenticator)
    assert store.update_counter(credential_id, 0, 5)
    assert not challenge_session.logged_in

    options = coordinator.begin_authentication(challenge_session, identity)
    assertion = authenticator.get(options, counter=9)
    outcome = coordinator.complete_authentication(challenge_session, assertion)

    assert outcome.identity == identity
    assert outcome.sign_counter == 9
    assert store.get(credential_id).sign_counter == 9
    assert challenge_session.logged_in
    assert challenge_session.identity == identity

    coordinator.begin_authentication(challenge_session, identity)
    with pytest.raises(CounterReplay):
        coordinator.complete_authentication(challenge_session, assertion)
    assert store.get(credential_id).sign_counter == 9


@pytest.mark.parametrize("reported", [5, 3, 0])
def test_stale_counter_is_rejected(coordinator, sessions, store, authenticator, reported):
    challenge_session = sessions.get("session-1")
    identity, credential_id = _register(coordinator, challenge_session, authenticator)
    store.update_counter(credential_id, 0, 5)

    options = coordinator.begin_authentication(challenge_session, identity)
    with pytest.raises(CounterReplay):
        coordinator.complete_authentication(
            challenge_session, authenticator.get(options, counter=reported)
        )

    assert store.get(credential_id).sign_counter == 5
    assert not challenge_session.logged_in


def test_authentication_completes_at_most_once(coordinator, sessions, authenticator):
    challenge_session = sessions.get("session-1")
    identity, _ = _register(coordinator, challenge_session, authenticator)
    options = coordinator.begin_authentication(challenge_session, identity)
    assertion = authenticator.get(options)

    coordinator.complete_authentication(challenge_session, assertion)
    with pytest.raises(NoPendingChallenge):
        coordinator.complete_authentication(challenge_session, assertion)


def test_authentication_with_other_challenge_fails(coordinator, sessions, store, authenticator):
    challenge_session = sessions.get("session-1")
    identity, credential_id = _register(coordinator, challenge_session, authenticator)

    options = coordinator.begin_authentication(challenge_session, identity)
    with pytest.raises(VerificationFailure):
        coordinator.complete_authentication(
            challenge_session,
            authenticator.get(options, challenge=websafe_encode(os.urandom(32))),
        )

    assert store.get(credential_id).sign_counter == 0
    assert not challenge_session.logged_in


def test_assertion_from_other_users_credential_is_rejected(coordinator, sessions):
    challenge_session = sessions.get("session-1")
    alice_device = SoftwareAuthenticator(ORIGIN)
    bob_device = SoftwareAuthenticator(ORIGIN)
    alice, _ = _register(coordinator, challenge_session, alice_device, "alice")
    _, bob_credential = _register(coordinator, challenge_session, bob_device, "bob")

    options = coordinator.begin_authentication(challenge_session, alice)
    with pytest.raises(NoSuchCredential):
        coordinator.complete_authentication(
            challenge_session, bob_device.get(options, credential_id=bob_credential)
        )


def test_assertion_from_unknown_credential_is_rejected(coordinator, sessions, authenticator):
    challenge_session = sessions.get("session-1")
    identity, _ = _register(coordinator, challenge_session, authenticator)
    stranger = SoftwareAuthenticator(ORIGIN)
    stranger_options = {
        "publicKey": {
            "challenge": websafe_encode(os.urandom(32)),
            "rp": {"id": "example.com"},
            "user": {"id": websafe_encode(identity.id)},
        }
    }
    stranger.create(stranger_options)

    options = coordinator.begin_authentication(challenge_session, identity)
    with pytest.raises(NoSuchCredential):
        coordinator.complete_authentication(
            challenge_session,
            stranger.get(options, credential_id=next(iter(stranger.credentials))),
        )


def test_malformed_assertion_is_a_verification_failure(coordinator, sessions, authenticator):
    challenge_session = sessions.get("session-1")
    identity, _ = _register(coordinator, challenge_session, authenticator)
    coordinator.begin_authentication(challenge_session, identity)

    with pytest.raises(VerificationFailure):
        coordinator.complete_authentication(challenge_session, {"id": "AAAA", "rawId": "AAAA"})
    assert challenge_session.get_pending() is None


def test_wrong_ceremony_kind_is_rejected(coordinator, sessions, authenticator):
    challenge_session = sessions.get("session-1")
    identity, _ = _register(coordinator, challenge_session, authenticator)
    options = coordinator.begin_registration(challenge_session, identity)

    with pytest.raises(NoPendingChallenge):
        coordinator.complete_authentication(challenge_session, authenticator.get({
            "publicKey": {
                "challenge": options["publicKey"]["challenge"],
                "allowCredentials": [
                    {"id": websafe_encode(cid)} for cid in authenticator.credentials
                ],
            }
        }))


def test_expired_challenge_is_rejected(coordinator, sessions, authenticator):
    challenge_session = sessions.get("session-1")
    identity = coordinator.resolve_identity("alice", create=True)
    options = coordinator.begin_registration(challenge_session, identity)
    pending = challenge_session.get_pending()
    challenge_session.set_pending(
        dataclasses.replace(pending, issued_at=pending.issued_at - coordinator.challenge_ttl - 1)
    )

    with pytest.raises(ChallengeExpired) as excinfo:
        coordinator.complete_registration(challenge_session, authenticator.create(options))
    assert isinstance(excinfo.value, NoPendingChallenge)
    assert challenge_session.get_pending() is None


def test_concurrent_counter_update_is_a_replay(verifier, sessions, authenticator):
    class RacingStore(MemoryCredentialStore):
        def update_counter(self, credential_id, expected, new):
            # Another request advances the counter between read and swap.
            super().update_counter(credential_id, expected, new)
            return super().update_counter(credential_id, expected, new)

    coordinator = CeremonyCoordinator(verifier, RacingStore())
    challenge_session = sessions.get("session-1")
    identity, _ = _register(coordinator, challenge_session, authenticator)

    options = coordinator.begin_authentication(challenge_session, identity)
    with pytest.raises(CounterReplay):
        coordinator.complete_authentication(challenge_session, authenticator.get(options))
    assert not challenge_session.logged_in


def test_bridge_tokens_are_minted(verifier, store, sessions, authenticator, bridge, rsa_key):
    coordinator = CeremonyCoordinator(verifier, store, bridge=bridge)
    challenge_session = sessions.get("session-1")
    identity = coordinator.resolve_identity("alice", create=True)

    options = coordinator.begin_registration(challenge_session, identity)
    registration = coordinator.complete_registration(challenge_session, authenticator.create(options))
    options = coordinator.begin_authentication(challenge_session, identity)
    authentication = coordinator.complete_authentication(challenge_session, authenticator.get(options))

    for token in (registration.token, authentication.token):
        claims = jwt.decode(
            token, rsa_key.public_key(), algorithms=["RS256"], audience=FIREBASE_AUDIENCE
        )
        assert claims["uid"] == websafe_encode(identity.id)
        assert claims["iss"] == SERVICE_ACCOUNT_EMAIL


class TestResolveIdentity:
    def test_created_identity_is_stable(self, coordinator, store):
        first = coordinator.resolve_identity("alice", create=True)
        second = coordinator.resolve_identity(" alice ", "Someone Else", create=True)

        assert first == second
        assert len(first.id) == 32
        assert first.display_name == "alice"
        assert store.find_user("alice") == first

    def test_unknown_identity_is_not_created_by_default(self, coordinator, store):
        assert coordinator.resolve_identity("bob") is None
        assert store.find_user("bob") is None

    @pytest.mark.parametrize("name", [None, "", "   ", 42, "x" * 65])
    def test_invalid_names_are_rejected(self, coordinator, name):
        with pytest.raises(InvalidRequest):
            coordinator.resolve_identity(name, create=True)
