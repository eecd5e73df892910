"""Chain reads against the cache manager, ArbWasmCache and the automation contract."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

from requests.exceptions import RequestException, Timeout
from web3 import Web3
from web3.exceptions import Web3Exception

import constants
from errors import ChainClientError, ChainClientTimeoutError
from polling.models import CacheManagerState, ChainEvent, ContractState
from storage.models import Blockchain

CACHE_MANAGER_ABI = [
    {"inputs": [], "name": "cacheSize", "outputs": [{"name": "", "type": "uint64"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "queueSize", "outputs": [{"name": "", "type": "uint64"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "decay", "outputs": [{"name": "", "type": "uint64"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "isPaused", "outputs": [{"name": "", "type": "bool"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "program", "type": "address"}], "name": "getMinBid",
     "outputs": [{"name": "min", "type": "uint192"}], "stateMutability": "view", "type": "function"},
    {"anonymous": False, "name": "InsertBid", "type": "event", "inputs": [
        {"indexed": True, "name": "codehash", "type": "bytes32"},
        {"indexed": False, "name": "program", "type": "address"},
        {"indexed": False, "name": "bid", "type": "uint192"},
        {"indexed": False, "name": "size", "type": "uint64"},
    ]},
    {"anonymous": False, "name": "DeleteBid", "type": "event", "inputs": [
        {"indexed": True, "name": "codehash", "type": "bytes32"},
        {"indexed": False, "name": "bid", "type": "uint192"},
        {"indexed": False, "name": "size", "type": "uint64"},
    ]},
    {"anonymous": False, "name": "Pause", "type": "event", "inputs": []},
    {"anonymous": False, "name": "Unpause", "type": "event", "inputs": []},
    {"anonymous": False, "name": "SetCacheSize", "type": "event", "inputs": [
        {"indexed": False, "name": "size", "type": "uint64"},
    ]},
    {"anonymous": False, "name": "SetDecayRate", "type": "event", "inputs": [
        {"indexed": False, "name": "decay", "type": "uint64"},
    ]},
]

ARB_WASM_CACHE_ABI = [
    {"inputs": [{"name": "codehash", "type": "bytes32"}], "name": "codehashIsCached",
     "outputs": [{"name": "", "type": "bool"}], "stateMutability": "view", "type": "function"},
]

AUTOMATION_ABI = [
    {"inputs": [{"name": "user", "type": "address"}], "name": "getUserBalance",
     "outputs": [{"name": "", "type": "uint256"}], "stateMutability": "view", "type": "function"},
]


class ChainStateClient(ABC):
    """Reads the pollers need from one chain. Implementations raise ChainClientError."""

    @abstractmethod
    async def get_block_number(self, blockchain: Blockchain) -> int: ...

    @abstractmethod
    async def get_events(self, blockchain: Blockchain, from_block: int, to_block: int) -> list[ChainEvent]: ...

    @abstractmethod
    async def get_contract_state(self, blockchain: Blockchain, address: str) -> ContractState: ...

    @abstractmethod
    async def get_cache_manager_state(self, blockchain: Blockchain) -> CacheManagerState: ...

    @abstractmethod
    async def get_user_balance(self, blockchain: Blockchain, user: str) -> int: ...


class Web3ChainStateClient(ChainStateClient):
    """
    ChainStateClient over web3.py's HTTP provider.

    The provider is synchronous, so every read runs in a worker thread and is
    bounded by `timeout`.
    """

    def __init__(self, timeout: float = 10.0) -> None:
        self.timeout = timeout
        self._web3: dict[str, Web3] = {}
        self.logger = logging.getLogger(__name__)

    def _client(self, blockchain: Blockchain) -> Web3:
        web3 = self._web3.get(blockchain.id)
        if web3 is None:
            web3 = Web3(Web3.HTTPProvider(blockchain.rpc_url, request_kwargs={'timeout': self.timeout}))
            self._web3[blockchain.id] = web3
        return web3

    async def _call(self, description: str, func, *args: Any) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.timeout)
        except (asyncio.TimeoutError, Timeout) as exc:
            raise ChainClientTimeoutError(f"{description} timed out after {self.timeout}s") from exc
        except (Web3Exception, RequestException, ValueError) as exc:
            raise ChainClientError(f"{description} failed: {exc}") from exc

    async def get_block_number(self, blockchain: Blockchain) -> int:
        web3 = self._client(blockchain)
        return await self._call(f"{blockchain.name} block number", lambda: web3.eth.block_number)

    async def get_events(self, blockchain: Blockchain, from_block: int, to_block: int) -> list[ChainEvent]:
        return await self._call(
            f"{blockchain.name} events {from_block}-{to_block}",
            self._get_events_sync, blockchain, from_block, to_block,
        )

    def _get_events_sync(self, blockchain: Blockchain, from_block: int, to_block: int) -> list[ChainEvent]:
        web3 = self._client(blockchain)
        manager = web3.eth.contract(address=web3.to_checksum_address(blockchain.cache_manager_address),
                                    abi=CACHE_MANAGER_ABI)
        events: list[ChainEvent] = []
        for name in constants.CACHE_MANAGER_EVENTS:
            event = getattr(manager.events, name)
            for log in event.get_logs(from_block=from_block, to_block=to_block):
                events.append(_decode_event(name, log))
        events.sort(key=lambda event: event.sort_key)
        timestamps = {
            block: int(web3.eth.get_block(block)["timestamp"])
            for block in sorted({event.block_number for event in events if event.is_bid})
        }
        return [
            dataclasses.replace(event, block_timestamp=timestamps[event.block_number]) if event.is_bid else event
            for event in events
        ]

    async def get_contract_state(self, blockchain: Blockchain, address: str) -> ContractState:
        return await self._call(f"{blockchain.name} state of {address}",
                                self._get_contract_state_sync, blockchain, address)

    def _get_contract_state_sync(self, blockchain: Blockchain, address: str) -> ContractState:
        web3 = self._client(blockchain)
        checksum = web3.to_checksum_address(address)
        code = bytes(web3.eth.get_code(checksum))
        code_hash = '0x' + Web3.keccak(code).hex().removeprefix('0x')

        wasm_cache = web3.eth.contract(address=web3.to_checksum_address(blockchain.arb_wasm_cache_address),
                                       abi=ARB_WASM_CACHE_ABI)
        manager = web3.eth.contract(address=web3.to_checksum_address(blockchain.cache_manager_address),
                                    abi=CACHE_MANAGER_ABI)
        is_cached = bool(wasm_cache.functions.codehashIsCached(bytes.fromhex(code_hash[2:])).call())
        min_bid = int(manager.functions.getMinBid(checksum).call())
        return ContractState(
            address=address.lower(),
            code_hash=code_hash,
            code_size=len(code),
            is_cached=is_cached,
            # the cached bid comes from stored InsertBid logs, see StatePoller
            current_bid=None if is_cached else 0,
            min_bid=min_bid,
        )

    async def get_cache_manager_state(self, blockchain: Blockchain) -> CacheManagerState:
        return await self._call(f"{blockchain.name} cache manager state",
                                self._get_cache_manager_state_sync, blockchain)

    def _get_cache_manager_state_sync(self, blockchain: Blockchain) -> CacheManagerState:
        web3 = self._client(blockchain)
        manager = web3.eth.contract(address=web3.to_checksum_address(blockchain.cache_manager_address),
                                    abi=CACHE_MANAGER_ABI)
        return CacheManagerState(
            cache_size=int(manager.functions.cacheSize().call()),
            queue_size=int(manager.functions.queueSize().call()),
            decay_rate=int(manager.functions.decay().call()),
            is_paused=bool(manager.functions.isPaused().call()),
        )

    async def get_user_balance(self, blockchain: Blockchain, user: str) -> int:
        if not blockchain.cache_manager_automation_address:
            raise ChainClientError(f"{blockchain.name} has no automation contract configured")
        return await self._call(f"{blockchain.name} balance of {user}",
                                self._get_user_balance_sync, blockchain, user)

    def _get_user_balance_sync(self, blockchain: Blockchain, user: str) -> int:
        web3 = self._client(blockchain)
        automation = web3.eth.contract(
            address=web3.to_checksum_address(blockchain.cache_manager_automation_address),
            abi=AUTOMATION_ABI,
        )
        return int(automation.functions.getUserBalance(web3.to_checksum_address(user)).call())


def _hex(value: Optional[Any]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return '0x' + bytes(value).hex()
    text = value.hex() if hasattr(value, 'hex') else str(value)
    return text if text.startswith('0x') else '0x' + text


def _decode_event(name: str, log: Any) -> ChainEvent:
    args = dict(log['args'])
    program = args.get('program')
    return ChainEvent(
        name=name,
        block_number=int(log['blockNumber']),
        log_index=int(log['logIndex']),
        transaction_hash=_hex(log['transactionHash']) or '',
        code_hash=_hex(args.get('codehash')),
        contract_address=program.lower() if program else None,
        bid=int(args['bid']) if 'bid' in args else None,
        size=int(args['size']) if 'size' in args else None,
        args=args,
    )


def sort_events(events: Sequence[ChainEvent]) -> list[ChainEvent]:
    return sorted(events, key=lambda event: event.sort_key)
