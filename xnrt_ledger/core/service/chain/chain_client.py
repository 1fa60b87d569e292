"""
BSC JSON-RPC access through web3.

Every call runs the blocking web3 HTTP provider in a worker thread with a request
timeout, and is retried a bounded number of times with exponential backoff.
Failures that survive the retries surface as ExternalUnavailableError.
"""

import asyncio
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from hexbytes import HexBytes
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception

from xnrt_ledger.core.exceptions.base import ExternalUnavailableError
from xnrt_ledger.core.service.chain.models import TransferEvent
from xnrt_ledger.core.logger.logger import get_logger
from xnrt_ledger.infra.config.settings import settings

logger = get_logger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

RETRYABLE_ERRORS = (Web3Exception, OSError, ValueError, TimeoutError)


def _hex(value: Any) -> str:
    return "0x" + bytes(HexBytes(value)).hex()


def address_to_topic(address: str) -> str:
    """Left-pad an address to a 32-byte indexed topic"""
    return "0x" + address.lower().replace("0x", "").rjust(64, "0")


def topic_to_address(topic: Any) -> str:
    raw = bytes(HexBytes(topic))
    if len(raw) != 32:
        raise ValueError(f"Indexed address topic must be 32 bytes, got {len(raw)}")
    return "0x" + raw[-20:].hex()


def parse_transfer_log(log: Dict[str, Any], decimals: int) -> TransferEvent:
    """Decode a raw Transfer log; raises ValueError/KeyError/TypeError on malformed input"""
    topics = log["topics"]
    if len(topics) != 3 or _hex(topics[0]).lower() != TRANSFER_TOPIC:
        raise ValueError("Not an ERC-20 Transfer log")

    data = bytes(HexBytes(log["data"]))
    if len(data) != 32:
        raise ValueError(f"Transfer value must be 32 bytes, got {len(data)}")

    block_number = log["blockNumber"]
    if isinstance(block_number, str):
        block_number = int(block_number, 16)

    raw_amount = int.from_bytes(data, "big")
    return TransferEvent(
        tx_hash=_hex(log["transactionHash"]).lower(),
        block_number=int(block_number),
        from_address=topic_to_address(topics[1]),
        to_address=topic_to_address(topics[2]),
        amount=Decimal(raw_amount) / (Decimal(10) ** decimals),
        log_index=int(log.get("logIndex", 0) or 0)
    )


class ChainClient:
    """Thin async wrapper over a web3 HTTP provider"""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: float = 0.5
    ):
        self.rpc_url = rpc_url or settings.RPC_BSC_URL
        self.timeout_seconds = timeout_seconds or settings.RPC_TIMEOUT_SECONDS
        self.max_retries = max_retries or settings.RPC_MAX_RETRIES
        self.backoff_seconds = backoff_seconds
        self.w3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.timeout_seconds}))

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries),
                wait=wait_exponential(multiplier=self.backoff_seconds, max=8),
                retry=retry_if_exception_type(RETRYABLE_ERRORS),
                reraise=True
            ):
                with attempt:
                    return await asyncio.to_thread(fn, *args)
        except RETRYABLE_ERRORS as e:
            logger.warning(
                "RPC call failed after retries",
                extra={"operation": operation, "attempts": self.max_retries, "error": str(e)}
            )
            raise ExternalUnavailableError(
                f"Blockchain RPC call failed: {operation}",
                details={"operation": operation}
            ) from e

    async def get_block_number(self) -> int:
        return int(await self._call("eth_blockNumber", lambda: self.w3.eth.block_number))

    async def get_transfer_logs(
        self,
        token_address: str,
        from_block: int,
        to_block: int,
        to_addresses: List[str]
    ) -> List[Dict[str, Any]]:
        """Transfer logs of `token_address` whose recipient is one of `to_addresses`"""
        if not to_addresses:
            return []

        log_filter = {
            "address": Web3.to_checksum_address(token_address),
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": [TRANSFER_TOPIC, None, [address_to_topic(a) for a in to_addresses]],
        }
        logs = await self._call("eth_getLogs", self.w3.eth.get_logs, log_filter)
        return [dict(log) for log in logs]

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        def fetch():
            try:
                return self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        receipt = await self._call("eth_getTransactionReceipt", fetch)
        return dict(receipt) if receipt is not None else None
