"""
Session Account

The custodial session account is the delegate named in every user's
grant: it signs redemption transactions and registry distribution records.

DESIGN DECISION: The signing key is an explicit object created by the
application factory and injected into the adapters that need it. There
is no module-level account; tests and tools can run with no key at all,
and a missing key only fails the operation that actually has to sign.

Web3 calls are synchronous. Like the rest of the chain layer we run them
in the default executor so the event loop stays free.
"""

import asyncio
from typing import Optional

from eth_account import Account
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential
from web3 import Web3

from pulsekeeper.audit import get_logger
from pulsekeeper.config import AppSettings, ChainSettings, ConfigurationError, get_settings


logger = get_logger("pulsekeeper.chain")


def build_web3(settings: Optional[ChainSettings] = None) -> Web3:
    """Create a Web3 client for the configured RPC endpoint."""
    settings = settings or get_settings().chain
    return Web3(Web3.HTTPProvider(
        settings.rpc_url,
        request_kwargs={"timeout": settings.request_timeout_seconds},
    ))


async def run_sync(fn, *args):
    """Run a blocking web3 call in the default executor."""
    return await asyncio.get_running_loop().run_in_executor(None, fn, *args)


class SignedCall:
    """A signed transaction, ready to broadcast (possibly more than once)."""

    def __init__(self, raw_transaction: bytes, tx_hash: str):
        self.raw_transaction = raw_transaction
        self.tx_hash = tx_hash


class SessionAccount:
    """
    Wraps the session signing key.

    Holds an asyncio lock that callers take around "sign, then broadcast"
    so two coroutines never sign with the same nonce.
    """

    def __init__(self, private_key: str):
        if not private_key:
            raise ConfigurationError("Session private key is empty")
        try:
            self._account = Account.from_key(private_key)
        except Exception as e:
            raise ConfigurationError(f"Invalid session private key: {e}")
        self.lock = asyncio.Lock()

    @classmethod
    def from_settings(cls) -> 'SessionAccount':
        """
        Load the session key from SESSION_PRIVATE_KEY.

        Raises:
            ConfigurationError: If the key is not configured
        """
        secret = get_settings().session.private_key
        if secret is None:
            raise ConfigurationError("SESSION_PRIVATE_KEY is not set")
        return cls(secret.get_secret_value())

    @property
    def address(self) -> str:
        return self._account.address

    def sign_contract_call(
        self,
        w3: Web3,
        contract_call,
        chain_id: int,
        gas_limit_buffer: float,
    ) -> SignedCall:
        """
        Build and sign a transaction for a web3 contract function call.

        Uses the pending nonce so a transaction still in the mempool is
        not replaced.
        """
        tx = contract_call.build_transaction({
            "from": self._account.address,
            "nonce": w3.eth.get_transaction_count(self._account.address, "pending"),
            "gasPrice": w3.eth.gas_price,
            "chainId": chain_id,
        })
        tx["gas"] = int(w3.eth.estimate_gas(tx) * gas_limit_buffer)

        signed = self._account.sign_transaction(tx)
        return SignedCall(
            raw_transaction=bytes(signed.raw_transaction),
            tx_hash=Web3.to_hex(signed.hash),
        )


class BroadcastError(Exception):
    """A signed transaction could not be broadcast."""
    pass


def _already_known(error: Exception) -> bool:
    message = str(error).lower()
    return "already known" in message or "known transaction" in message


async def broadcast_with_retry(
    w3: Web3,
    signed: SignedCall,
    settings: Optional[AppSettings] = None,
) -> str:
    """
    Broadcast a signed transaction with bounded exponential backoff.

    Every attempt sends the SAME signed bytes, so the transaction hash is
    the idempotency key: a retry after a lost response cannot create a
    second transfer, and a node that already has the transaction counts
    as success.

    Returns:
        The transaction hash

    Raises:
        BroadcastError: When every attempt failed
    """
    settings = settings or get_settings().app

    def _send():
        try:
            w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            if _already_known(e):
                return
            raise

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(settings.submission_max_attempts),
            wait=wait_exponential(
                multiplier=1,
                min=settings.submission_backoff_min_seconds,
                max=settings.submission_backoff_max_seconds,
            ),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "broadcast_retry",
                        tx_hash=signed.tx_hash,
                        attempt=attempt.retry_state.attempt_number,
                    )
                await run_sync(_send)
    except Exception as e:
        raise BroadcastError(f"Broadcast of {signed.tx_hash} failed: {e}") from e

    return signed.tx_hash
