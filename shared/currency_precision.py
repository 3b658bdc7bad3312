"""
Currency Precision Configuration Module

Amounts move through the sweep pipeline as integers in the chain's
smallest unit (wei). Conversion to display units happens only at the
edges (logs, admin responses) through AmountConverter.
"""

from decimal import Decimal
from typing import NamedTuple

# Integer amount in the smallest unit of the native currency.
Wei = int

WEI_PER_GWEI = 10**9


class PrecisionConfig(NamedTuple):
    """Currency precision configuration"""
    currency_code: str
    smallest_unit_name: str
    decimal_places: int
    display_decimals: int
    smallest_unit_per_base: int  # How many smallest units = 1 base unit


CURRENCY_PRECISION = {
    'ETH': PrecisionConfig('ETH', 'wei', 18, 6, 10**18),
    'WETH': PrecisionConfig('WETH', 'wei', 18, 6, 10**18),
}


class AmountConverter:
    """Utility class for converting between display amounts and smallest units"""

    @staticmethod
    def get_currency_config(currency: str) -> PrecisionConfig:
        if currency not in CURRENCY_PRECISION:
            raise ValueError(f"Unsupported currency: {currency}")
        return CURRENCY_PRECISION[currency]

    @staticmethod
    def to_smallest_units(amount: Decimal, currency: str = 'ETH') -> Wei:
        """Convert display amount to smallest units (for storage)"""
        config = AmountConverter.get_currency_config(currency)
        return int(Decimal(amount) * config.smallest_unit_per_base)

    @staticmethod
    def from_smallest_units(smallest_units: Wei, currency: str = 'ETH') -> Decimal:
        """Convert smallest units to display amount"""
        config = AmountConverter.get_currency_config(currency)
        if smallest_units is None:
            smallest_units = 0
        amount = Decimal(int(smallest_units)) / Decimal(config.smallest_unit_per_base)
        return amount.quantize(Decimal('0.' + '0' * config.decimal_places))

    @staticmethod
    def format_display_amount(smallest_units: Wei, currency: str = 'ETH') -> str:
        amount = AmountConverter.from_smallest_units(smallest_units, currency)
        config = CURRENCY_PRECISION[currency]
        return f"{amount:.{config.display_decimals}f} {currency}"

    @staticmethod
    def to_gwei(wei: Wei) -> Decimal:
        return Decimal(int(wei)) / Decimal(WEI_PER_GWEI)
