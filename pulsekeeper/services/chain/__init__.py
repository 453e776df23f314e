"""
Chain Services Package

Adapters for the deadline/backup registry and for delegated execution,
plus the session account that signs for both.
"""

from pulsekeeper.services.chain.execution import (
    DelegationExecutionClient,
    ExecutionError,
    ExecutionInterface,
    SettlementError,
    SubmissionError,
    build_redeem_arguments,
    encode_erc20_transfer,
    encode_single_execution,
)
from pulsekeeper.services.chain.registry import (
    RegistryError,
    RegistryInterface,
    Web3RegistryClient,
)
from pulsekeeper.services.chain.session import (
    BroadcastError,
    SessionAccount,
    broadcast_with_retry,
    build_web3,
)

__all__ = [
    # Execution
    "DelegationExecutionClient",
    "ExecutionError",
    "ExecutionInterface",
    "SettlementError",
    "SubmissionError",
    "build_redeem_arguments",
    "encode_erc20_transfer",
    "encode_single_execution",
    # Registry
    "RegistryError",
    "RegistryInterface",
    "Web3RegistryClient",
    # Session
    "BroadcastError",
    "SessionAccount",
    "broadcast_with_retry",
    "build_web3",
]
