from .base import PriceOracle, SwapVenue, TokenService
from .memory import InMemoryTokenService, ManualPriceOracle, ManualSwapper, encode_price_update

__all__ = [
    "InMemoryTokenService",
    "ManualPriceOracle",
    "ManualSwapper",
    "PriceOracle",
    "SwapVenue",
    "TokenService",
    "encode_price_update",
]
