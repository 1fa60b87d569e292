import uuid

import pytest
from eth_account.hdaccount import seed_from_mnemonic

from xnrt_ledger.core.exceptions.base import NotFoundError
from xnrt_ledger.core.exceptions.handler import ServiceError
from xnrt_ledger.core.service.wallet import deposit_address_service
from xnrt_ledger.core.service.wallet.deposit_address_service import DepositAddressService, derive_address

TEST_MNEMONIC = "test test test test test test test test test test test junk"


def test_derive_address_is_deterministic():
    first = derive_address(TEST_MNEMONIC, 0)

    assert first == derive_address(TEST_MNEMONIC, 0)
    assert first != derive_address(TEST_MNEMONIC, 1)
    assert first.startswith("0x") and first == first.lower()
    assert len(first) == 42


def test_derive_address_known_vectors(monkeypatch):
    """Ethereum coin type reproduces the well-known development accounts"""
    monkeypatch.setattr(deposit_address_service, "DERIVATION_PATH", "m/44'/60'/0'/0/{index}")

    assert derive_address(TEST_MNEMONIC, 0) == "0xf39fd6e51aad88f6f4ce6ab8827279cfffb92266"
    assert derive_address(TEST_MNEMONIC, 1) == "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"


def test_hex_seed_matches_mnemonic():
    seed = "0x" + seed_from_mnemonic(TEST_MNEMONIC, "").hex()

    assert derive_address(seed, 3) == derive_address(TEST_MNEMONIC, 3)


@pytest.mark.asyncio
async def test_assign_is_stable_per_user(session, make_user):
    """A user keeps the address assigned on first request; users get consecutive indices"""
    service = DepositAddressService(session, master_seed=TEST_MNEMONIC)
    alice = await make_user()
    bob = await make_user()

    first = await service.get_or_assign(alice.id)
    again = await service.get_or_assign(alice.id)
    second = await service.get_or_assign(bob.id)

    assert first == again
    assert first.derivation_index == 0
    assert first.address == derive_address(TEST_MNEMONIC, 0)
    assert second.derivation_index == 1
    assert second.address != first.address
    assert first.network == "BSC" and first.token == "USDT"


@pytest.mark.asyncio
async def test_unknown_user(session):
    service = DepositAddressService(session, master_seed=TEST_MNEMONIC)

    with pytest.raises(NotFoundError):
        await service.get_or_assign(uuid.uuid4())


@pytest.mark.asyncio
async def test_missing_seed_is_unavailable(session, make_user):
    user = await make_user()
    service = DepositAddressService(session, master_seed="")

    with pytest.raises(ServiceError) as exc_info:
        await service.get_or_assign(user.id)
    assert exc_info.value.status_code == 503
