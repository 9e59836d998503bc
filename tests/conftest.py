import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from passkey_bridge.bridge import IdentityBridge
from passkey_bridge.ceremony import CeremonyCoordinator
from passkey_bridge.sessions import SessionStore
from passkey_bridge.storage import MemoryCredentialStore
from passkey_bridge.verifier import WebAuthnVerifier

from .authenticator import SoftwareAuthenticator

RP_ID = "example.com"
ORIGIN = "https://example.com"
SERVICE_ACCOUNT_EMAIL = "bridge@example-project.iam.gserviceaccount.com"


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def bridge(rsa_key):
    return IdentityBridge(SERVICE_ACCOUNT_EMAIL, rsa_key, key_id="test-key")


@pytest.fixture
def verifier():
    return WebAuthnVerifier(RP_ID, "Example RP", [ORIGIN])


@pytest.fixture
def store():
    return MemoryCredentialStore()


@pytest.fixture
def coordinator(verifier, store):
    return CeremonyCoordinator(verifier, store, challenge_ttl=300)


@pytest.fixture
def sessions():
    return SessionStore(max_age=3600)


@pytest.fixture
def authenticator():
    return SoftwareAuthenticator(ORIGIN)
