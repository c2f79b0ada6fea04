import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from ageproof.config import Settings
from helpers import (
    BROKER_ISSUER,
    CONSENT_CLIENT_ID,
    POSTBACK_KEY,
    ROOT_SECRET,
    FakeClock,
    make_jwk,
    make_providers,
)


@pytest.fixture(scope="session")
def broker_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def broker_jwks(broker_private_key):
    return {"keys": [make_jwk(broker_private_key)]}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(broker_jwks):
    return Settings(
        root_secret=ROOT_SECRET,
        providers=make_providers(),
        postback_key=POSTBACK_KEY,
        consent_client_id=CONSENT_CLIENT_ID,
        broker_issuer=BROKER_ISSUER,
        consent_jwks=broker_jwks,
        public_base_url="https://verify.example.com",
    )
