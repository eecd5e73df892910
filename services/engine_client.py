#!/usr/bin/env python3
import logging
from typing import Any, Optional, Protocol, Sequence

import aiohttp

from automation.models import SelectedContract
from errors import ConfigError, SubmissionError
from storage.models import Blockchain

PLACE_BIDS_FUNCTION = 'function placeBids((address,address)[])'

logger = logging.getLogger(__name__)


class TransactionSubmitter(Protocol):
    async def submit_batch(self, contracts: Sequence[SelectedContract], *, blockchain: Blockchain) -> Optional[str]:
        """Submits one batch and returns the submission id, raising on failure."""
        ...


class EngineClient:
    """Queues placeBids writes against the automation contract through a transaction engine."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: Optional[str],
        backend_wallet_address: Optional[str],
        auth_token: Optional[str],
        timeout: float = 30,
    ):
        if not (base_url and backend_wallet_address and auth_token):
            raise ConfigError(
                "Missing required engine configuration: ENGINE_BASE_URL, ENGINE_BACKEND_WALLET_ADDRESS, ENGINE_AUTH_TOKEN"
            )
        self.session = session
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.headers = {
            'X-Backend-Wallet-Address': backend_wallet_address,
            'Content-Type': 'application/json',
            'Authorization': f'Bearer {auth_token}',
        }

    async def write_contract(self, chain_id: int, contract_address: str, function_name: str, args: list) -> dict[str, Any]:
        url = f"{self.base_url}/contract/{chain_id}/{contract_address}/write"
        payload = {'functionName': function_name, 'args': args}
        logger.info("Executing write contract on %s (chain: %s)", contract_address, chain_id)
        try:
            async with self.session.post(url, json=payload, headers=self.headers, timeout=self.timeout) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise SubmissionError(f"Engine request failed ({response.status}): {body[:200]}")
                return await response.json()
        except aiohttp.ClientError as exc:
            raise SubmissionError(f"Engine request failed: {exc}") from exc

    async def submit_batch(self, contracts: Sequence[SelectedContract], *, blockchain: Blockchain) -> Optional[str]:
        if not blockchain.cache_manager_automation_address:
            raise SubmissionError(f"{blockchain.name} has no automation contract configured")
        args = [[[contract.user, contract.address] for contract in contracts]]
        data = await self.write_contract(
            blockchain.chain_id,
            blockchain.cache_manager_automation_address,
            PLACE_BIDS_FUNCTION,
            args,
        )
        result = data.get('result') if isinstance(data, dict) else None
        if isinstance(result, dict):
            return result.get('queueId')
        return None
