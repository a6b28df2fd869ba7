"""
Exchange Rate Provider

Fetches the latest rates from an open.er-api.com compatible endpoint
and merges them with the configured fallback table.

DESIGN DECISION: Every rate we hand out is a RATE TO BASE: the number of
base-currency units one unit of the foreign currency is worth, so that
amount_base = amount * rate. The provider quotes the opposite direction
(units of currency per one unit of base), so remote rates are inverted
before they are merged. The fallback table is configured in rate-to-base
form already.

Merge order: fallback first, remote overrides, and the base currency is
always exactly 1. A provider failure is NOT fatal: the job continues on
the fallback table and an audit event records the degradation.
"""

from dataclasses import dataclass, field
from decimal import Decimal, DivisionByZero, InvalidOperation
from typing import Optional
from uuid import UUID

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from pocketledger.audit import AuditLogger
from pocketledger.errors import DependencyError
from pocketledger.ledger.money import normalize_rate
from pocketledger.models.audit import AuditEventBuilder


logger = structlog.get_logger("pocketledger.fx")


class RateProviderError(DependencyError):
    """The rate source is unreachable or returned an unusable payload."""
    pass


class OpenErApiRateProvider:
    """
    Client for the open.er-api.com "latest" endpoint.

    Usage::

        provider = OpenErApiRateProvider()
        rates = await provider.fetch_rates("USD")   # rate-to-base
        await provider.close()
    """

    def __init__(
        self,
        api_url: str = "https://open.er-api.com/v6/latest/{base}",
        timeout: float = 10.0,
        max_attempts: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create a reusable httpx client."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._http

    async def close(self) -> None:
        """Clean up HTTP client."""
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def fetch_rates(self, base_currency: str) -> dict[str, Decimal]:
        """
        Fetch the latest table and convert it to rate-to-base.

        Raises:
            RateProviderError: Transport failure, non-2xx status,
                result other than "success", or a missing rates object
        """
        url = self.api_url.format(base=base_currency)
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(httpx.TransportError),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=1, min=2, max=10),
                reraise=True,
            ):
                with attempt:
                    client = await self._get_client()
                    response = await client.get(url)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise RateProviderError(f"Rate source request failed: {e}")
        except ValueError as e:
            raise RateProviderError(f"Rate source returned invalid JSON: {e}")

        if not isinstance(payload, dict) or payload.get("result") != "success":
            raise RateProviderError(
                "Rate source did not report success",
                details={"result": payload.get("result") if isinstance(payload, dict) else None},
            )
        quoted = payload.get("rates")
        if not isinstance(quoted, dict):
            raise RateProviderError("Rate source response has no rates")

        return invert_quotes(quoted)


def invert_quotes(quoted: dict) -> dict[str, Decimal]:
    """
    Turn "units of currency per one base" into rate-to-base.

    Entries that are not positive numbers, or that vanish when quantized,
    are dropped.
    """
    rates = {}
    for code, value in quoted.items():
        if isinstance(value, bool) or value is None:
            continue
        try:
            per_base = Decimal(str(value))
            if not per_base.is_finite() or per_base <= 0:
                continue
            rate = normalize_rate(Decimal(1) / per_base)
        except (InvalidOperation, DivisionByZero, ValueError):
            continue
        if rate > 0:
            rates[str(code).upper()] = rate
    return rates


@dataclass
class RateTable:
    """Merged rate-to-base table used by one refresh run."""
    base_currency: str
    rates: dict[str, Decimal] = field(default_factory=dict)
    remote_ok: bool = False

    @property
    def source(self) -> str:
        return "remote" if self.remote_ok else "fallback"

    def rate_for(self, currency: str) -> Optional[Decimal]:
        """Rate-to-base for a currency, or None when unknown."""
        return self.rates.get(currency.upper())


async def load_rate_table(
    base_currency: str,
    provider: Optional[OpenErApiRateProvider],
    fallback: dict[str, Decimal],
    audit_logger: Optional[AuditLogger] = None,
    correlation_id: Optional[UUID] = None,
) -> RateTable:
    """
    Build the merged table: fallback, then remote, then base = 1.

    A provider failure degrades to the fallback table and never raises.
    """
    base_currency = base_currency.upper()
    rates = {code.upper(): normalize_rate(rate) for code, rate in fallback.items()}
    remote_ok = False

    if provider is not None:
        try:
            remote = await provider.fetch_rates(base_currency)
            rates.update(remote)
            remote_ok = True
        except RateProviderError as e:
            logger.warning("fx_provider_degraded", error=e.message, base=base_currency)
            if audit_logger:
                audit_logger.log(AuditEventBuilder.fx_provider_degraded(
                    error_message=e.message,
                    correlation_id=correlation_id,
                ))

    rates[base_currency] = Decimal(1)
    table = RateTable(base_currency=base_currency, rates=rates, remote_ok=remote_ok)

    if audit_logger:
        audit_logger.log(AuditEventBuilder.fx_rates_loaded(
            base_currency=base_currency,
            rate_count=len(rates),
            source=table.source,
            correlation_id=correlation_id,
        ))
    return table
