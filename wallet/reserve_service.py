from typing import Optional

from eth_utils import is_address

from shared.crypto.clients.evm_client import ChainClient
from shared.crypto.errors import NetworkError
from shared.currency_precision import AmountConverter
from shared.logger import setup_logging

logger = setup_logging(__name__)


class ReserveService:
    """
    Read-only balance queries for dashboards: the treasury wallet and
    any single deposit address. Network failures are logged and reported
    as None rather than raised.
    """

    def __init__(self, chain: Optional[ChainClient], treasury_address: Optional[str]):
        self.chain = chain
        self.treasury_address = treasury_address

    def get_address_balance(self, address: str) -> Optional[dict]:
        if not is_address(address):
            raise ValueError(f"Invalid address: {address}")
        if self.chain is None:
            logger.warning("Balance requested but no node is configured")
            return None
        try:
            balance_wei = self.chain.get_balance(address)
        except NetworkError as e:
            logger.error("Error getting address balance",
                         extra={"context": {"address": address, "reason": str(e)}})
            return None
        return {
            "address": address,
            "balance_wei": str(balance_wei),
            "balance_eth": str(AmountConverter.from_smallest_units(balance_wei)),
        }

    def get_treasury_balance(self) -> Optional[dict]:
        if not self.treasury_address:
            logger.warning("Treasury balance requested but TREASURY_WALLET is not set")
            return None
        balance = self.get_address_balance(self.treasury_address)
        if balance is not None:
            logger.info(f"Treasury balance: {balance['balance_eth']} ETH")
        return balance
