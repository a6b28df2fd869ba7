"""Exchange rate services."""

from pocketledger.services.fx.provider import (
    OpenErApiRateProvider,
    RateProviderError,
    RateTable,
    invert_quotes,
    load_rate_table,
)

__all__ = [
    "OpenErApiRateProvider",
    "RateProviderError",
    "RateTable",
    "invert_quotes",
    "load_rate_table",
]
