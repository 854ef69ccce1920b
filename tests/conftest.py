from unittest.mock import AsyncMock, MagicMock

import pytest

from ringbroker.config import Settings
from ringbroker.credentials import CredentialAuthority
from ringbroker.keystore import KeyStore
from ringbroker.notifications import DeliveryResult
from ringbroker.persona import PersonaAuthority
from ringbroker.registry import RingRegistry
from ringbroker.rings import RingMembership
from ringbroker.storage import MemoryStorage
from ringbroker.vault import PrivacyVault
from ringbroker.visibility import KeyVisibilityLedger

from helpers import ALICE, ARCHITECT_PASSPHRASE, BOB, FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        master_passphrase="test-master-passphrase",
        architect_passphrase=ARCHITECT_PASSPHRASE,
        pbkdf2_iterations=1_000,
        notification_timeout_seconds=0.5,
        notification_max_attempts=1,
    )


@pytest.fixture
def storage(clock):
    return MemoryStorage(clock=clock.epoch)


@pytest.fixture
def persona(storage, clock):
    return PersonaAuthority(storage, clock=clock)


@pytest.fixture
def rings(storage, persona, clock):
    return RingMembership(storage, persona, clock=clock)


@pytest.fixture
def registry(storage, rings, clock):
    return RingRegistry(storage, rings, clock=clock)


@pytest.fixture
def visibility(storage, rings, clock):
    return KeyVisibilityLedger(storage, rings, clock=clock)


@pytest.fixture
def keystore(storage, rings, visibility, settings, clock):
    return KeyStore(
        storage, rings, visibility, settings.master_passphrase,
        iterations=settings.pbkdf2_iterations, clock=clock,
    )


@pytest.fixture
def vault(storage, rings, settings, clock):
    return PrivacyVault(
        storage, rings, settings.master_passphrase,
        iterations=settings.pbkdf2_iterations, clock=clock,
    )


@pytest.fixture
def sms_sender():
    sender = MagicMock()
    sender.send = AsyncMock(return_value=DeliveryResult(success=True, provider_message_id="msg-1"))
    return sender


@pytest.fixture
def email_sender():
    sender = MagicMock()
    sender.send = AsyncMock(return_value=DeliveryResult(success=True, provider_message_id="msg-1"))
    return sender


@pytest.fixture
def credentials(storage, persona, rings, settings, sms_sender, email_sender, clock):
    return CredentialAuthority(
        storage, persona, rings, settings,
        sms_sender=sms_sender, email_sender=email_sender, clock=clock,
    )


@pytest.fixture
def ring_r1(rings):
    """Ring r1: alice is the creating owner, bob a plain member."""
    return rings.create_ring("r1", ALICE, {ALICE: ["owner"], BOB: ["member"]}, creator=ALICE)
