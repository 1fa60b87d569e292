import json
from datetime import datetime
from typing import Optional
from uuid import UUID

import redis.asyncio as redis

from xnrt_ledger.core.service.wallet.models import WalletChallenge
from xnrt_ledger.core.logger.logger import logger


class ChallengeStore:
    """Redis store for wallet-link challenges

    A challenge lives under one key per (user, address, nonce). Consumption is a
    separate marker written with SET NX, so exactly one confirm can claim a nonce.
    """

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = "wallet:challenge:"

    def _get_key(self, user_id: UUID, address: str, nonce: str) -> str:
        return f"{self.key_prefix}{user_id}:{address.lower()}:{nonce}"

    def _consumed_key(self, user_id: UUID, address: str, nonce: str) -> str:
        return f"{self._get_key(user_id, address, nonce)}:consumed"

    def _serialize_challenge(self, challenge: WalletChallenge) -> str:
        challenge_dict = challenge.model_dump(exclude={"consumed"})
        challenge_dict["user_id"] = str(challenge_dict["user_id"])
        challenge_dict["expires_at"] = challenge_dict["expires_at"].isoformat()
        return json.dumps(challenge_dict)

    def _deserialize_challenge(self, data: str, consumed: bool) -> WalletChallenge:
        challenge_dict = json.loads(data)
        challenge_dict["expires_at"] = datetime.fromisoformat(challenge_dict["expires_at"])
        return WalletChallenge(**challenge_dict, consumed=consumed)

    async def save_challenge(self, challenge: WalletChallenge) -> None:
        """Save a challenge; the key outlives expiry so late confirms can be told apart from unknown ones"""
        try:
            key = self._get_key(challenge.user_id, challenge.address, challenge.nonce)
            await self.redis.setex(key, self.ttl_seconds, self._serialize_challenge(challenge))
            logger.debug(
                "Saved wallet challenge",
                extra={"wallet_address": challenge.address, "ttl": self.ttl_seconds}
            )
        except Exception as e:
            logger.error(
                "Error saving wallet challenge",
                extra={"wallet_address": challenge.address, "error": str(e)}
            )
            raise

    async def get_challenge(self, user_id: UUID, address: str, nonce: str) -> Optional[WalletChallenge]:
        """Get a challenge including its consumed state, or None if unknown"""
        try:
            data = await self.redis.get(self._get_key(user_id, address, nonce))
            if not data:
                return None
            if isinstance(data, bytes):
                data = data.decode()

            consumed = await self.redis.get(self._consumed_key(user_id, address, nonce)) is not None
            return self._deserialize_challenge(data, consumed)
        except Exception as e:
            logger.error(
                "Error getting wallet challenge",
                extra={"wallet_address": address, "error": str(e)}
            )
            raise

    async def mark_consumed(self, challenge: WalletChallenge) -> bool:
        """Atomically claim the nonce; False means another confirm already claimed it"""
        key = self._consumed_key(challenge.user_id, challenge.address, challenge.nonce)
        claimed = await self.redis.set(key, "1", nx=True, ex=self.ttl_seconds)
        return bool(claimed)
