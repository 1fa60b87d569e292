import re

from eth_account import Account
from eth_account.messages import encode_defunct
from hexbytes import HexBytes

from xnrt_ledger.core.exceptions.base import InvalidSignatureError, ValidationError
from xnrt_ledger.core.logger.logger import logger

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-f]{40}$")


def normalize_address(address: str) -> str:
    """Lower-case an EVM address and check its shape"""
    normalized = (address or "").strip().lower()
    if not ADDRESS_PATTERN.match(normalized):
        raise ValidationError("Invalid wallet address format", details={"address": address})
    return normalized


class SignatureVerificationService:
    """Recovers EIP-191 personal_sign signers with eth-account"""

    @staticmethod
    def _to_signature_bytes(signature: str) -> HexBytes:
        if isinstance(signature, str) and not signature.startswith("0x"):
            signature = "0x" + signature
        return HexBytes(signature)

    def recover_signer(self, message: str, signature: str) -> str:
        """Return the lower-case address that signed `message`"""
        try:
            signature_bytes = self._to_signature_bytes(signature)
            recovered = Account.recover_message(encode_defunct(text=message), signature=signature_bytes)
        except Exception as e:
            logger.warning("Malformed wallet signature", extra={"error": str(e)})
            raise InvalidSignatureError("Invalid signature format") from e
        return recovered.lower()

    def verify_signature(self, claimed_address: str, signature: str, message: str) -> str:
        """
        Verify that `claimed_address` signed `message`

        Returns:
            The normalized address

        Raises:
            InvalidSignatureError: if the signature is malformed or recovers another address
        """
        address = normalize_address(claimed_address)
        recovered = self.recover_signer(message, signature)

        if recovered != address:
            logger.warning(
                "Recovered address does not match claimed address",
                extra={"wallet_address": address, "recovered_address": recovered}
            )
            raise InvalidSignatureError(
                "Signature was not produced by the claimed address",
                details={"address": address}
            )

        logger.info("Signature verified successfully", extra={"wallet_address": address})
        return address
