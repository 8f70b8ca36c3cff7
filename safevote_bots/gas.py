"""Gas price sampling and gas limit buffering."""

import logging
from decimal import Decimal

logger = logging.getLogger(__name__)


async def sample_gas_price(web3, multiplier: float, fallback_gwei: Decimal) -> int:
    """
    Network gas price times `multiplier`, in wei.

    Falls back to the static `fallback_gwei` price when the node cannot be
    sampled.
    """
    try:
        price = await web3.eth.gas_price
        return int(price * multiplier)
    except Exception as e:
        fallback = int(Decimal(fallback_gwei) * Decimal(10 ** 9))
        logger.warning(f"Failed to sample gas price, using fallback {fallback_gwei} gwei: {e}")
        return fallback


def apply_gas_buffer(estimate: int, buffer: float) -> int:
    """Scale a gas estimate by the safety buffer (1.2 means +20%)."""
    return int(estimate * buffer)
