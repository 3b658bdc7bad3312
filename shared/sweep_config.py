from dataclasses import dataclass
from typing import Optional

from decouple import config
from eth_utils import is_address

from shared.logger import setup_logging

logger = setup_logging(__name__)

PLAIN_TRANSFER_GAS_LIMIT = 21000
DEFAULT_SWEEP_INTERVAL_MINUTES = 3
DEFAULT_USER_DELAY_SECONDS = 1.0
DEFAULT_CONFIRMATION_TIMEOUT = 120
DEFAULT_RPC_TIMEOUT = 30


@dataclass
class ChainConfig:
    """Connection settings for the Ethereum JSON-RPC node"""
    rpc_url: str
    chain_id: Optional[int] = None
    network: str = "ethereum"
    timeout: int = DEFAULT_RPC_TIMEOUT
    gas_limit: int = PLAIN_TRANSFER_GAS_LIMIT


@dataclass
class SweepSettings:
    """Process-wide settings for the sweep job"""
    rpc_url: Optional[str]
    treasury_address: Optional[str]
    encryption_key: Optional[str]
    chain_id: Optional[int] = None
    network: str = "ethereum"
    interval_minutes: int = DEFAULT_SWEEP_INTERVAL_MINUTES
    user_delay_seconds: float = DEFAULT_USER_DELAY_SECONDS
    confirmation_timeout: int = DEFAULT_CONFIRMATION_TIMEOUT
    rpc_timeout: int = DEFAULT_RPC_TIMEOUT
    # Off by default: the sweep-scheduler worker owns the periodic job.
    scheduler_in_api: bool = False

    @classmethod
    def from_env(cls) -> 'SweepSettings':
        return cls(
            rpc_url=config('ETH_NODE_URL', default=None),
            treasury_address=config('TREASURY_WALLET', default=None),
            encryption_key=config('WALLET_ENCRYPTION_KEY', default=None),
            chain_id=config('ETH_CHAIN_ID', default=None, cast=lambda v: int(v) if v else None),
            network=config('SWEEP_NETWORK', default='ethereum'),
            interval_minutes=config('SWEEP_INTERVAL_MINUTES', default=DEFAULT_SWEEP_INTERVAL_MINUTES, cast=int),
            user_delay_seconds=config('SWEEP_USER_DELAY_SECONDS', default=DEFAULT_USER_DELAY_SECONDS, cast=float),
            confirmation_timeout=config('SWEEP_CONFIRMATION_TIMEOUT', default=DEFAULT_CONFIRMATION_TIMEOUT, cast=int),
            rpc_timeout=config('RPC_TIMEOUT', default=DEFAULT_RPC_TIMEOUT, cast=int),
            scheduler_in_api=config('SWEEP_SCHEDULER_IN_API', default=False, cast=bool),
        )

    def chain_config(self) -> Optional[ChainConfig]:
        if not self.rpc_url:
            return None
        return ChainConfig(
            rpc_url=self.rpc_url,
            chain_id=self.chain_id,
            network=self.network,
            timeout=self.rpc_timeout,
        )

    def sweeping_enabled(self) -> bool:
        """Check the settings sweeping cannot run without, warning about each gap"""
        enabled = True
        if not self.rpc_url:
            logger.error("ETH_NODE_URL not set, sweep job disabled")
            enabled = False
        if not self.treasury_address:
            logger.error("TREASURY_WALLET not set, sweep job disabled")
            enabled = False
        elif not is_address(self.treasury_address):
            logger.error(
                "TREASURY_WALLET is not a valid address, sweep job disabled",
                extra={"context": {"treasury_address": self.treasury_address}},
            )
            enabled = False
        return enabled
