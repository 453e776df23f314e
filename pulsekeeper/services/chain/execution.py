"""
Redemption Execution

Turns a list of TransferInstructions into ONE delegated-execution
transaction and waits for its receipt.

Every transfer of a batch is one single-mode execution inside the same
`redeemDelegations` call, so the batch settles or reverts as a whole:
there is never a state where backup A was paid and backup B was not.

Execution encoding (single call, default mode):
    mode          = bytes32(0)
    executionData = target (20 bytes) ++ value (uint256) ++ callData
ERC-20:  target = token,     value = 0,      callData = transfer(to, amount)
Native:  target = recipient, value = amount, callData = empty
"""

from abc import ABC, abstractmethod
from typing import Optional

from eth_abi import encode
from web3 import Web3

from pulsekeeper.audit import get_logger
from pulsekeeper.config import ChainSettings, ConfigurationError, get_settings
from pulsekeeper.models.grant import Settlement, SettlementStatus, TransferInstruction
from pulsekeeper.services.chain.session import (
    SessionAccount,
    broadcast_with_retry,
    build_web3,
    run_sync,
)


logger = get_logger("pulsekeeper.execution")

# keccak256("transfer(address,uint256)")[:4]
ERC20_TRANSFER_SELECTOR = bytes.fromhex("a9059cbb")

SINGLE_DEFAULT_MODE = b"\x00" * 32

DELEGATION_MANAGER_ABI = [
    {
        "inputs": [
            {"name": "_permissionContexts", "type": "bytes[]"},
            {"name": "_modes", "type": "bytes32[]"},
            {"name": "_executionCallDatas", "type": "bytes[]"},
        ],
        "name": "redeemDelegations",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


class ExecutionError(Exception):
    """Base exception for execution operations."""
    pass


class SubmissionError(ExecutionError):
    """The batch was never accepted by the network."""
    pass


class SettlementError(ExecutionError):
    """The batch was submitted but its receipt could not be obtained."""
    pass


def encode_erc20_transfer(recipient: str, amount: int) -> bytes:
    """Calldata for ERC-20 transfer(recipient, amount)."""
    return ERC20_TRANSFER_SELECTOR + encode(
        ["address", "uint256"],
        [Web3.to_checksum_address(recipient), amount],
    )


def encode_single_execution(target: str, value: int, call_data: bytes) -> bytes:
    """Packed single-execution payload: target ++ uint256(value) ++ callData."""
    return (
        bytes.fromhex(target[2:])
        + value.to_bytes(32, "big")
        + call_data
    )


def encode_transfer(transfer: TransferInstruction) -> bytes:
    """Execution payload for one transfer instruction."""
    if transfer.is_native:
        return encode_single_execution(transfer.recipient, transfer.amount, b"")
    return encode_single_execution(
        transfer.asset,
        0,
        encode_erc20_transfer(transfer.recipient, transfer.amount),
    )


def _context_bytes(auth_context: str) -> bytes:
    value = auth_context[2:] if auth_context.startswith("0x") else auth_context
    try:
        return bytes.fromhex(value)
    except ValueError as e:
        raise ValueError(f"Permission context is not hex: {e}") from e


def build_redeem_arguments(
    transfers: list[TransferInstruction],
) -> tuple[list[bytes], list[bytes], list[bytes]]:
    """
    Arguments for redeemDelegations: one entry per transfer.

    Raises:
        ValueError: If the batch is empty or mixes grants
    """
    if not transfers:
        raise ValueError("Cannot build an empty batch")

    first = transfers[0]
    for transfer in transfers[1:]:
        if (transfer.auth_context != first.auth_context
                or transfer.auth_manager != first.auth_manager):
            raise ValueError("All transfers of a batch must use the same grant")

    context = _context_bytes(first.auth_context)
    contexts = [context for _ in transfers]
    modes = [SINGLE_DEFAULT_MODE for _ in transfers]
    executions = [encode_transfer(t) for t in transfers]
    return contexts, modes, executions


class ExecutionInterface(ABC):
    """Submits transfer batches under a user's grant."""

    @abstractmethod
    async def submit_batch(
        self,
        auth_context: str,
        auth_manager: str,
        transfers: list[TransferInstruction],
    ) -> str:
        """
        Submit all transfers as one atomic batch.

        Returns:
            A handle for await_settlement (the transaction hash)

        Raises:
            SubmissionError: If the batch could not be submitted
        """
        pass

    @abstractmethod
    async def await_settlement(self, handle: str) -> Settlement:
        """
        Wait for the batch to settle.

        Raises:
            SettlementError: If no receipt could be obtained
        """
        pass


class DelegationExecutionClient(ExecutionInterface):
    """
    Executes batches through the delegation manager named in the grant.

    The session account signs and pays for the transaction; the manager
    validates the user's permission context and performs the transfers
    from the user's account.
    """

    def __init__(
        self,
        session: Optional[SessionAccount],
        w3: Optional[Web3] = None,
        settings: Optional[ChainSettings] = None,
    ):
        self._session = session
        self._settings = settings or get_settings().chain
        self._w3 = w3 or build_web3(self._settings)

    async def submit_batch(
        self,
        auth_context: str,
        auth_manager: str,
        transfers: list[TransferInstruction],
    ) -> str:
        if self._session is None:
            raise ConfigurationError("No session account configured for redemptions")

        try:
            contexts, modes, executions = build_redeem_arguments(transfers)
        except ValueError as e:
            raise SubmissionError(str(e)) from e
        if transfers[0].auth_context != auth_context or transfers[0].auth_manager != auth_manager:
            raise SubmissionError("Transfers were built under a different grant")

        manager = self._w3.eth.contract(
            address=Web3.to_checksum_address(auth_manager),
            abi=DELEGATION_MANAGER_ABI,
        )
        call = manager.functions.redeemDelegations(contexts, modes, executions)

        try:
            async with self._session.lock:
                signed = await run_sync(
                    self._session.sign_contract_call,
                    self._w3,
                    call,
                    self._settings.chain_id,
                    self._settings.gas_limit_buffer,
                )
                tx_hash = await broadcast_with_retry(self._w3, signed)
        except Exception as e:
            raise SubmissionError(f"Batch submission failed: {e}") from e

        logger.info(
            "batch_submitted",
            tx_hash=tx_hash,
            manager=auth_manager,
            transfers=len(transfers),
        )
        return tx_hash

    async def await_settlement(self, handle: str) -> Settlement:
        try:
            receipt = await run_sync(
                self._w3.eth.wait_for_transaction_receipt,
                handle,
                self._settings.receipt_timeout_seconds,
            )
        except Exception as e:
            raise SettlementError(f"No receipt for {handle}: {e}") from e

        status = SettlementStatus.SUCCESS if receipt["status"] == 1 else SettlementStatus.REVERTED
        logger.info(
            "batch_settled",
            tx_hash=handle,
            status=status.value,
            block_number=receipt.get("blockNumber"),
        )
        return Settlement(
            settlement_ref=handle,
            status=status,
            block_number=receipt.get("blockNumber"),
        )
