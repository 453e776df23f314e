"""
Deadline/Backup Registry Adapter

The registry contract owns each user's check-in deadline and backup list.
The engine only reads it, plus one best-effort write (`recordDistribution`)
that exists so the off-chain indexer can show distributions.

Design:
- Embedded minimal ABI: only the functions we call
- Sync web3 calls offloaded to the default executor
- Reads are retried a few times with backoff; the caller (the eligibility
  monitor) downgrades a final failure to "not distributing"
"""

from abc import ABC, abstractmethod
from typing import Optional

from tenacity import retry, stop_after_attempt, wait_exponential
from web3 import Web3

from pulsekeeper.config import ChainSettings, ConfigurationError, get_settings
from pulsekeeper.models.grant import BackupAllocation, NATIVE_ASSET, ZERO_ADDRESS
from pulsekeeper.services.chain.session import (
    SessionAccount,
    broadcast_with_retry,
    build_web3,
    run_sync,
)


REGISTRY_ABI = [
    {
        "inputs": [{"name": "user", "type": "address"}],
        "name": "isRegistered",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "user", "type": "address"}],
        "name": "isDistributing",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "user", "type": "address"}],
        "name": "getDeadline",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "user", "type": "address"}],
        "name": "getBackups",
        "outputs": [
            {
                "components": [
                    {"name": "addr", "type": "address"},
                    {"name": "allocationBps", "type": "uint16"},
                ],
                "name": "",
                "type": "tuple[]",
            },
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "user", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "backupAddresses", "type": "address[]"},
            {"name": "amounts", "type": "uint256[]"},
        ],
        "name": "recordDistribution",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


class RegistryError(Exception):
    """The registry could not be read or written."""
    pass


class RegistryInterface(ABC):
    """What the engine needs from the deadline/backup registry."""

    @abstractmethod
    async def is_registered(self, user: str) -> bool:
        pass

    @abstractmethod
    async def is_distributing(self, user: str) -> bool:
        """True once the user's check-in deadline has passed."""
        pass

    @abstractmethod
    async def get_deadline(self, user: str) -> int:
        """Deadline as a unix timestamp."""
        pass

    @abstractmethod
    async def get_backups(self, user: str) -> list[BackupAllocation]:
        pass

    @abstractmethod
    async def record_distribution(
        self,
        user: str,
        asset: str,
        recipients: list[str],
        amounts: list[int],
    ) -> Optional[str]:
        """
        Record a settled distribution for indexing.

        Best-effort: callers log and ignore failures.

        Returns:
            Transaction hash of the record, if one was sent
        """
        pass


def registry_asset(asset: str) -> str:
    """The registry records the native asset as address(0)."""
    return ZERO_ADDRESS if asset.lower() == NATIVE_ASSET else asset


class Web3RegistryClient(RegistryInterface):
    """
    Registry adapter over a web3 contract.

    Usage:
        registry = Web3RegistryClient(session=SessionAccount.from_settings())
        if await registry.is_distributing(user):
            backups = await registry.get_backups(user)
    """

    def __init__(
        self,
        w3: Optional[Web3] = None,
        session: Optional[SessionAccount] = None,
        settings: Optional[ChainSettings] = None,
    ):
        self._settings = settings or get_settings().chain
        self._w3 = w3 or build_web3(self._settings)
        self._session = session
        self._contract = self._w3.eth.contract(
            address=Web3.to_checksum_address(self._settings.registry_address),
            abi=REGISTRY_ABI,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def _call(self, function_name: str, *args):
        fn = getattr(self._contract.functions, function_name)(*args)
        try:
            return await run_sync(fn.call)
        except Exception as e:
            raise RegistryError(f"{function_name} failed: {e}") from e

    async def is_registered(self, user: str) -> bool:
        return bool(await self._call("isRegistered", Web3.to_checksum_address(user)))

    async def is_distributing(self, user: str) -> bool:
        return bool(await self._call("isDistributing", Web3.to_checksum_address(user)))

    async def get_deadline(self, user: str) -> int:
        return int(await self._call("getDeadline", Web3.to_checksum_address(user)))

    async def get_backups(self, user: str) -> list[BackupAllocation]:
        backups = await self._call("getBackups", Web3.to_checksum_address(user))
        # Each backup decodes as an (addr, allocationBps) tuple
        return [
            BackupAllocation(recipient=addr, share_bps=int(bps))
            for addr, bps in backups
        ]

    async def record_distribution(
        self,
        user: str,
        asset: str,
        recipients: list[str],
        amounts: list[int],
    ) -> Optional[str]:
        if self._session is None:
            raise ConfigurationError("No session account configured for registry writes")
        if len(recipients) != len(amounts):
            raise ValueError("recipients and amounts must have the same length")

        call = self._contract.functions.recordDistribution(
            Web3.to_checksum_address(user),
            Web3.to_checksum_address(registry_asset(asset)),
            [Web3.to_checksum_address(r) for r in recipients],
            amounts,
        )

        try:
            async with self._session.lock:
                signed = await run_sync(
                    self._session.sign_contract_call,
                    self._w3,
                    call,
                    self._settings.chain_id,
                    self._settings.gas_limit_buffer,
                )
                await broadcast_with_retry(self._w3, signed)
            receipt = await run_sync(
                self._w3.eth.wait_for_transaction_receipt,
                signed.tx_hash,
                self._settings.receipt_timeout_seconds,
            )
        except Exception as e:
            raise RegistryError(f"recordDistribution failed: {e}") from e

        if receipt["status"] != 1:
            raise RegistryError(f"recordDistribution reverted: {signed.tx_hash}")
        return signed.tx_hash
