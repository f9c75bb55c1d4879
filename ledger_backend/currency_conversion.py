from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass, field
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
import json
import threading
import time
from typing import Any, Callable, Dict, Mapping, Protocol, Tuple
from urllib.error import URLError
from urllib.parse import urlencode
from urllib.request import urlopen

from ledger_backend.errors import RateUnavailable
from ledger_backend.logging_config import get_logger
from ledger_backend.models import ZERO, normalize_currency, positive_amount

logger = get_logger("ledger.rates")

DEFAULT_CACHE_TTL_SECONDS = 60 * 60
DEFAULT_TIMEOUT_SECONDS = 5

DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "JPY": Decimal("147.50"),
    "CAD": Decimal("1.34"),
    "AUD": Decimal("1.52"),
    "NZD": Decimal("1.64"),
    "CHF": Decimal("0.88"),
    "SEK": Decimal("10.45"),
}

ZERO_DECIMAL_CURRENCIES = {
    "BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
}
THREE_DECIMAL_CURRENCIES = {"BHD", "IQD", "JOD", "KWD", "LYD", "OMR", "TND"}

RateKey = Tuple[str, str]


class RateSource(Protocol):
    def fetch(self, source: str, target: str) -> Mapping[str, Any]:
        """Return a raw ``{"rates": {target: value}}`` payload."""


@dataclass(frozen=True)
class StaticRateSource:
    """Deterministic, in-memory FX rates, used when ``RATE_SOURCE=static``.

    Rates are expressed as target currency per 1 USD.
    """

    rates: Mapping[str, Decimal] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    def fetch(self, source: str, target: str) -> Mapping[str, Any]:
        try:
            source_rate = self.rates[source]
        except KeyError as exc:
            raise RateUnavailable(f"No static rate for {source}") from exc
        if target not in self.rates:
            return {"base": source, "rates": {}}
        return {"base": source, "rates": {target: self.rates[target] / source_rate}}


@dataclass(frozen=True)
class FrankfurterRateSource:
    base_url: str = "https://api.frankfurter.app"
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    def fetch(self, source: str, target: str) -> Mapping[str, Any]:
        url = f"{self.base_url}/latest?{urlencode({'from': source, 'to': target})}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                return json.load(response)
        except (URLError, TimeoutError, OSError, ValueError) as exc:
            raise RateUnavailable("Frankfurter API unavailable") from exc


@dataclass(frozen=True)
class CachedRate:
    rate: Decimal
    expires_at: float


@dataclass
class RateCache:
    """Process-wide rate cache keyed by (from, to) with a per-entry TTL."""

    ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS
    clock: Callable[[], float] = time.monotonic
    _entries: Dict[RateKey, CachedRate] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def get(self, key: RateKey) -> Decimal | None:
        with self._lock:
            cached = self._entries.get(key)
            if cached is None:
                return None
            if cached.expires_at <= self.clock():
                del self._entries[key]
                return None
            return cached.rate

    def put(self, key: RateKey, rate: Decimal) -> None:
        with self._lock:
            self._entries[key] = CachedRate(rate=rate, expires_at=self.clock() + self.ttl_seconds)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RateLookupClient:
    """Cached, single-flight access to an exchange-rate source.

    Concurrent callers asking for the same uncached pair share the first
    caller's in-flight lookup. Failures are never cached and nothing past
    the TTL is ever served.
    """

    def __init__(self, source: RateSource, cache: RateCache | None = None) -> None:
        self.source = source
        self.cache = cache if cache is not None else RateCache()
        self._lock = threading.Lock()
        self._in_flight: Dict[RateKey, Future] = {}

    def get_rate(self, source_currency: str, target_currency: str) -> Decimal:
        source = normalize_currency(source_currency)
        target = normalize_currency(target_currency)
        if source == target:
            return Decimal("1")

        key = (source, target)
        with self._lock:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug("Rate cache hit %s->%s", source, target)
                return cached
            future = self._in_flight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._in_flight[key] = future

        if not leader:
            return future.result()

        try:
            rate = self._lookup(source, target)
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            self.cache.put(key, rate)
            future.set_result(rate)
            return rate
        finally:
            with self._lock:
                self._in_flight.pop(key, None)

    def _lookup(self, source: str, target: str) -> Decimal:
        logger.debug("Rate cache miss %s->%s", source, target)
        try:
            payload = self.source.fetch(source, target)
        except RateUnavailable:
            logger.warning(
                "Rate source unreachable for %s->%s",
                source,
                target,
                extra={"action": "rate_lookup", "resource": f"{source}/{target}"},
            )
            raise
        return _extract_rate(payload, target)


def _extract_rate(payload: Any, target: str) -> Decimal:
    if not isinstance(payload, Mapping):
        raise RateUnavailable("Rate source returned a malformed response")
    rates = payload.get("rates")
    if not isinstance(rates, Mapping):
        raise RateUnavailable("Rate source response missing rates")
    if target not in rates:
        raise RateUnavailable(f"Rate source response missing {target}")
    value = rates[target]
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise RateUnavailable(f"Rate for {target} is not numeric")
    try:
        rate = Decimal(str(value))
    except InvalidOperation as exc:
        raise RateUnavailable(f"Rate for {target} is not numeric") from exc
    if not rate.is_finite() or rate <= ZERO:
        raise RateUnavailable(f"Rate for {target} is not a positive number")
    return rate


def minor_unit_exponent(currency: str) -> Decimal:
    normalized = normalize_currency(currency)
    if normalized in ZERO_DECIMAL_CURRENCIES:
        return Decimal("1")
    if normalized in THREE_DECIMAL_CURRENCIES:
        return Decimal("0.001")
    return Decimal("0.01")


class CurrencyNormalizer:
    def __init__(self, accounting_currency: str, rate_client: RateLookupClient) -> None:
        self.accounting_currency = normalize_currency(accounting_currency)
        self.rate_client = rate_client
        self._exponent = minor_unit_exponent(self.accounting_currency)

    def normalize(self, amount: Decimal | int | float | str, currency: str) -> Decimal:
        """Express ``amount`` in the accounting currency.

        Amounts already in the accounting currency pass through untouched;
        converted amounts are rounded half-to-even to the minor unit.
        Raises ``RateUnavailable`` unchanged when no rate can be found.
        """
        value = positive_amount(amount)
        normalized_currency = normalize_currency(currency)
        if normalized_currency == self.accounting_currency:
            return value

        rate = self.rate_client.get_rate(normalized_currency, self.accounting_currency)
        return (value * rate).quantize(self._exponent, rounding=ROUND_HALF_EVEN)
