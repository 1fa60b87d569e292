from decimal import Decimal
from typing import Optional

from xnrt_ledger.core.service.chain.chain_client import ChainClient, parse_transfer_log
from xnrt_ledger.core.service.chain.models import VerifyResult
from xnrt_ledger.core.logger.logger import get_logger
from xnrt_ledger.infra.config.settings import settings

logger = get_logger(__name__)

AMOUNT_TOLERANCE = Decimal("1e-10")


class DepositVerifier:
    """Checks a single reported USDT transfer against its receipt"""

    def __init__(
        self,
        chain_client: ChainClient,
        token_address: Optional[str] = None,
        required_confirmations: Optional[int] = None,
        decimals: Optional[int] = None
    ):
        self.chain = chain_client
        self.token_address = (token_address or settings.USDT_BSC_ADDRESS).lower()
        self.required_confirmations = (
            required_confirmations if required_confirmations is not None else settings.BSC_CONFIRMATIONS
        )
        self.decimals = decimals if decimals is not None else settings.USDT_DECIMALS

    async def verify(
        self,
        tx_hash: str,
        expected_to: str,
        min_amount: Optional[Decimal] = None
    ) -> VerifyResult:
        """
        Sum the token transfers in `tx_hash` that pay `expected_to`

        A result is verified only when the receipt succeeded, the summed amount
        covers `min_amount` and the block has the required confirmations.
        RPC failures propagate as ExternalUnavailableError.
        """
        if not expected_to:
            return VerifyResult(verified=False, reason="Receiving address not configured")

        receipt = await self.chain.get_transaction_receipt(tx_hash)
        if receipt is None:
            return VerifyResult(verified=False, reason="Transaction not found")

        head = await self.chain.get_block_number()
        block_number = receipt.get("blockNumber") or 0
        confirmations = max(0, head - block_number)
        from_address = (receipt.get("from") or "").lower() or None

        if receipt.get("status") != 1:
            return VerifyResult(
                verified=False,
                confirmations=confirmations,
                block_number=block_number,
                from_address=from_address,
                reason="Transaction failed"
            )

        expected = expected_to.lower()
        total = Decimal(0)
        for log in receipt.get("logs", []):
            if str(log.get("address", "")).lower() != self.token_address:
                continue
            try:
                event = parse_transfer_log(log, self.decimals)
            except (ValueError, KeyError, TypeError):
                continue
            if event.to_address == expected:
                total += event.amount

        if total == 0:
            return VerifyResult(
                verified=False,
                confirmations=confirmations,
                block_number=block_number,
                from_address=from_address,
                reason="No USDT transfer to expected address"
            )

        if min_amount is not None and total + AMOUNT_TOLERANCE < min_amount:
            return VerifyResult(
                verified=False,
                confirmations=confirmations,
                amount=total,
                block_number=block_number,
                from_address=from_address,
                reason=f"On-chain {total} USDT < claimed {min_amount} USDT"
            )

        if confirmations < self.required_confirmations:
            return VerifyResult(
                verified=False,
                confirmations=confirmations,
                amount=total,
                block_number=block_number,
                from_address=from_address,
                reason=f"Only {confirmations}/{self.required_confirmations} confirmations"
            )

        logger.info(
            "Deposit verified on chain",
            extra={"tx_hash": tx_hash, "amount": str(total), "confirmations": confirmations}
        )
        return VerifyResult(
            verified=True,
            confirmations=confirmations,
            amount=total,
            block_number=block_number,
            from_address=from_address
        )
