import threading
import time
from dataclasses import dataclass
from typing import Any, List, Optional

import requests
from eth_account import Account
from eth_utils import to_checksum_address, to_hex

from shared.crypto.errors import NetworkError, SubmissionError
from shared.currency_precision import Wei
from shared.logger import setup_logging
from shared.sweep_config import ChainConfig

logger = setup_logging(__name__)


@dataclass(frozen=True)
class FeeEstimate:
    gas_price: Wei
    gas_limit: int

    @property
    def cost(self) -> Wei:
        return self.gas_price * self.gas_limit


@dataclass(frozen=True)
class TransactionHandle:
    """A broadcast transaction; the hash is known before confirmation"""
    tx_hash: str
    from_address: str
    to_address: str
    value: Wei
    gas_price: Wei
    gas_limit: int
    nonce: int
    chain_id: int


@dataclass(frozen=True)
class TransactionReceipt:
    tx_hash: str
    block_number: int
    gas_used: int
    status: int

    @property
    def succeeded(self) -> bool:
        return self.status == 1


def _hex_to_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    return int(value, 16)


class ChainClient:
    """Thin JSON-RPC client over an Ethereum node.

    Reads raise NetworkError, which callers treat as retryable on the
    next run. Anything going wrong while building or broadcasting a
    transfer raises SubmissionError and is never retried here.
    """

    def __init__(self, config: ChainConfig, http: Optional[requests.Session] = None):
        self.config = config
        self.http = http or requests.Session()
        self.http.headers.update({
            'Content-Type': 'application/json',
            'User-Agent': 'SweepService/1.0'
        })
        self._chain_id = config.chain_id
        self._request_id = 0

    def make_request(self, method: str, params: List[Any] = None) -> Any:
        """Make a JSON-RPC call and return its result"""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or []
        }
        try:
            response = self.http.post(self.config.rpc_url, json=payload, timeout=self.config.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.Timeout as e:
            raise NetworkError(f"{method} timed out after {self.config.timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"{method} failed: {e}") from e
        except ValueError as e:
            raise NetworkError(f"{method} returned a non-JSON response") from e

        if "error" in body:
            error = body["error"] or {}
            raise NetworkError(f"{method} rejected by node: {error.get('message', 'unknown error')}")
        if "result" not in body:
            raise NetworkError(f"{method} returned no result")
        return body["result"]

    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = _hex_to_int(self.make_request("eth_chainId"))
        return self._chain_id

    def get_block_number(self) -> int:
        return _hex_to_int(self.make_request("eth_blockNumber"))

    def get_balance(self, address: str) -> Wei:
        """Confirmed balance of an address in wei"""
        return _hex_to_int(self.make_request("eth_getBalance", [address, "latest"]))

    def get_fee_estimate(self) -> FeeEstimate:
        gas_price = _hex_to_int(self.make_request("eth_gasPrice"))
        return FeeEstimate(gas_price=gas_price, gas_limit=self.config.gas_limit)

    def get_transaction_count(self, address: str) -> int:
        return _hex_to_int(self.make_request("eth_getTransactionCount", [address, "pending"]))

    def submit_transfer(self, sender_key, to_address: str, amount: Wei,
                        gas_price: Wei, gas_limit: int) -> TransactionHandle:
        """Sign a plain value transfer locally and broadcast it.

        sender_key is a hex private key or an eth_account LocalAccount.
        Returns as soon as the node accepts the raw transaction.
        """
        try:
            sender = sender_key if hasattr(sender_key, "sign_transaction") else Account.from_key(sender_key)
            to_address = to_checksum_address(to_address)
            nonce = self.get_transaction_count(sender.address)
            chain_id = self.chain_id()
            transaction = {
                'to': to_address,
                'value': amount,
                'gas': gas_limit,
                'gasPrice': gas_price,
                'nonce': nonce,
                'chainId': chain_id
            }
            signed = sender.sign_transaction(transaction)
        except NetworkError as e:
            raise SubmissionError(f"Could not prepare transfer: {e}") from e
        except (ValueError, TypeError) as e:
            raise SubmissionError(f"Invalid transfer parameters: {e}") from e

        try:
            tx_hash = self.make_request("eth_sendRawTransaction", [to_hex(signed.raw_transaction)])
        except NetworkError as e:
            raise SubmissionError(f"Broadcast failed: {e}") from e

        logger.info(
            "Transfer broadcast",
            extra={"context": {
                "tx_hash": tx_hash,
                "from_address": sender.address,
                "to_address": to_address,
                "value_wei": amount,
                "nonce": nonce,
            }},
        )
        return TransactionHandle(
            tx_hash=tx_hash,
            from_address=sender.address,
            to_address=to_address,
            value=amount,
            gas_price=gas_price,
            gas_limit=gas_limit,
            nonce=nonce,
            chain_id=chain_id,
        )

    def get_transaction_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        result = self.make_request("eth_getTransactionReceipt", [tx_hash])
        if not result or result.get("blockNumber") is None:
            return None
        return TransactionReceipt(
            tx_hash=tx_hash,
            block_number=_hex_to_int(result.get("blockNumber")),
            gas_used=_hex_to_int(result.get("gasUsed")),
            status=_hex_to_int(result.get("status")),
        )

    def wait_for_receipt(self, tx_hash: str, timeout: float = 120, poll_interval: float = 2.0,
                         stop_event: Optional[threading.Event] = None) -> Optional[TransactionReceipt]:
        """Poll until the transaction is mined.

        None when the timeout runs out or stop_event is set first.
        """
        stop_event = stop_event or threading.Event()
        deadline = time.monotonic() + timeout
        while True:
            try:
                receipt = self.get_transaction_receipt(tx_hash)
            except NetworkError as e:
                logger.warning(
                    "Receipt poll failed",
                    extra={"context": {"tx_hash": tx_hash, "reason": str(e)}},
                )
                receipt = None
            if receipt is not None:
                return receipt
            if time.monotonic() >= deadline or stop_event.is_set():
                return None
            if stop_event.wait(min(poll_interval, max(deadline - time.monotonic(), 0))):
                return None
