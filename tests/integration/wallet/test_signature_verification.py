import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from xnrt_ledger.core.exceptions.base import InvalidSignatureError, ValidationError
from xnrt_ledger.core.service.wallet.signature_verification import SignatureVerificationService, normalize_address

MESSAGE = "Link wallet to XNRT\nNonce: 0x1234567890"


@pytest.fixture
def test_wallet():
    """Create a test wallet for signature verification"""
    return Account.create()


@pytest.fixture
def signature_service():
    return SignatureVerificationService()


def sign(message, account):
    signed = Account.sign_message(encode_defunct(text=message), private_key=account.key)
    return "0x" + bytes(signed.signature).hex()


def test_verify_valid_signature(test_wallet, signature_service):
    address = signature_service.verify_signature(test_wallet.address, sign(MESSAGE, test_wallet), MESSAGE)

    assert address == test_wallet.address.lower()


def test_verify_signature_over_other_message(test_wallet, signature_service):
    """A signature over a different message recovers another address"""
    with pytest.raises(InvalidSignatureError):
        signature_service.verify_signature(test_wallet.address, sign("Different message", test_wallet), MESSAGE)


def test_recover_signer(test_wallet, signature_service):
    assert signature_service.recover_signer(MESSAGE, sign(MESSAGE, test_wallet)) == test_wallet.address.lower()


@pytest.mark.parametrize("signature", ["0x1234", "not-hex", ""])
def test_malformed_signature(test_wallet, signature_service, signature):
    with pytest.raises(InvalidSignatureError) as exc_info:
        signature_service.verify_signature(test_wallet.address, signature, MESSAGE)
    assert exc_info.value.message == "Invalid signature format"


@pytest.mark.parametrize("address", ["0x123", "742d35Cc6634C0532925a3b844Bc454e4438f44e", None])
def test_normalize_address_rejects(address):
    with pytest.raises(ValidationError):
        normalize_address(address)


def test_normalize_address_lowercases():
    assert normalize_address(" 0x742d35Cc6634C0532925a3b844Bc454e4438f44e ") == "0x742d35cc6634c0532925a3b844bc454e4438f44e"
