"""
Coaster - CoinGecko price pipeline

Fetches the latest USD price for a list of CoinGecko identifiers and keeps the
small amount of persisted configuration the tracker needs (the id list and an
optional demo API key).

Two fetch modes share one request path:
- display fetch: tolerant, unknown ids come back as placeholder rows
- validation fetch: strict, used before settings are saved
"""

import os
import math
import json
import logging
import threading
from decimal import Decimal, ROUND_HALF_EVEN
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union
from dataclasses import dataclass, field
from enum import Enum

import requests

__version__ = "1.0.0"

logger = logging.getLogger('Coaster')

# API configuration
COINGECKO_BASE_URL = 'https://api.coingecko.com/api/v3'
SIMPLE_PRICE_ENDPOINT = '/simple/price'
API_KEY_HEADER = 'x-cg-demo-api-key'
DEFAULT_TIMEOUT = 10

DEFAULT_IDS_RAW = 'nockchain'
PLACEHOLDER = '—'


def app_dir() -> Path:
    """Application directory for settings and logs"""
    override = os.environ.get('COASTER_HOME')
    if override:
        return Path(override)
    return Path.home() / '.coaster'


def normalize_ids(raw: Union[str, Iterable[str], None]) -> List[str]:
    """Turn a comma-separated string (or a sequence of them) into identifiers.

    Lowercases, splits on commas, trims whitespace and drops empty segments.
    Order and duplicates are preserved.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        chunks = [raw]
    else:
        chunks = list(raw)
    ids = []
    for chunk in chunks:
        for part in chunk.lower().split(','):
            part = part.strip()
            if part:
                ids.append(part)
    return ids


def clean_api_key(api_key: Optional[str]) -> Optional[str]:
    """Trimmed API key, or None when blank"""
    if api_key is None:
        return None
    key = api_key.strip()
    return key or None


def format_usd(value: float) -> str:
    """Format a price as a US-dollar string.

    Prices of 1000 and up show no cents, prices from 1 to 1000 show two
    decimals and anything smaller shows up to four (never fewer than two).
    """
    if value >= 1000:
        max_digits = 0
    elif value >= 1:
        max_digits = 2
    else:
        max_digits = 4
    min_digits = min(2, max_digits)

    quantum = Decimal(1).scaleb(-max_digits)
    amount = Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_EVEN)
    sign = '-' if amount < 0 else ''
    text = f"{abs(amount):,.{max_digits}f}"

    if max_digits > min_digits:
        whole, _, frac = text.partition('.')
        frac = frac.rstrip('0').ljust(min_digits, '0')
        text = f"{whole}.{frac}"

    return f"{sign}${text}"


# Data classes for type safety
class FetchMode(Enum):
    """Fetch mode enumeration"""
    DISPLAY = "display"
    VALIDATE = "validate"


class ErrorKind(Enum):
    """Terminal failure kinds of a single fetch attempt"""
    NO_IDENTIFIERS = "no_identifiers"
    NETWORK_ERROR = "network_error"
    RATE_LIMITED = "rate_limited"
    UNAUTHORIZED = "unauthorized"
    HTTP_ERROR = "http_error"
    DECODE_ERROR = "decode_error"
    UNKNOWN_IDENTIFIERS = "unknown_identifiers"
    NO_USD_PRICE = "no_usd_price"


@dataclass
class PriceEntry:
    """USD price for one identifier; usd_price is None when unresolved"""
    id: str
    usd_price: Optional[float] = None

    @property
    def symbol(self) -> str:
        return self.id.upper()

    @property
    def price_text(self) -> str:
        if self.usd_price is None:
            return PLACEHOLDER
        return format_usd(self.usd_price)


@dataclass
class Configuration:
    """Persisted tracker configuration"""
    ids: List[str] = field(default_factory=lambda: normalize_ids(DEFAULT_IDS_RAW))
    api_key: Optional[str] = None

    @property
    def ids_raw(self) -> str:
        return ','.join(self.ids)


@dataclass
class FetchResult:
    """Outcome of one fetch: entries on success, kind and message on failure"""
    entries: List[PriceEntry] = field(default_factory=list)
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    names: List[str] = field(default_factory=list)

    @classmethod
    def success(cls, entries: List[PriceEntry]) -> 'FetchResult':
        return cls(entries=list(entries))

    @classmethod
    def failure(cls, kind: ErrorKind, message: str,
                names: Optional[List[str]] = None) -> 'FetchResult':
        return cls(error_kind=kind, message=message, names=list(names or []))

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @property
    def status_text(self) -> str:
        """Short status line for the presentation layer"""
        return "" if self.ok else self.message


class PriceFetchError(Exception):
    """A fetch or validation attempt failed"""

    def __init__(self, kind: ErrorKind, message: str, names: Optional[List[str]] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.names = list(names or [])


class ConfigStore:
    """JSON-file backed settings store.

    Holds the comma-joined id list and the optional API key. Both values are
    written together through a temporary file so a crash never leaves them
    out of sync.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else app_dir() / 'settings.json'
        self._lock = threading.Lock()

    def get_default_settings(self) -> dict:
        """Get default settings"""
        return {'ids': DEFAULT_IDS_RAW, 'api_key': ''}

    def read(self) -> Configuration:
        """Load the saved configuration, falling back to defaults"""
        settings = self.get_default_settings()
        with self._lock:
            if self.path.exists():
                try:
                    with open(self.path, 'r', encoding='utf-8') as f:
                        saved = json.load(f)
                    if isinstance(saved, dict):
                        for key in settings:
                            if isinstance(saved.get(key), str):
                                settings[key] = saved[key]
                    else:
                        logger.warning(f"Settings file {self.path} is not an object, using defaults")
                except (json.JSONDecodeError, UnicodeDecodeError) as e:
                    logger.warning(f"Settings file corrupted, using defaults: {e}")
                except OSError as e:
                    logger.warning(f"Could not load settings: {e}")
            else:
                logger.debug("No existing settings found, using defaults")

        return Configuration(ids=normalize_ids(settings['ids']),
                             api_key=clean_api_key(settings['api_key']))

    def write(self, config: Configuration) -> None:
        """Save settings with atomic write"""
        payload = {'ids': config.ids_raw, 'api_key': config.api_key or ''}
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self.path.with_suffix('.tmp')
            try:
                with open(temp_path, 'w', encoding='utf-8') as f:
                    json.dump(payload, f, indent=2, ensure_ascii=False)
                temp_path.replace(self.path)
            except OSError as e:
                logger.error(f"Error saving settings: {e}")
                if temp_path.exists():
                    temp_path.unlink()
                raise
        logger.info(f"Settings saved ({len(config.ids)} ids)")


class MemoryConfigStore:
    """In-process store with the ConfigStore interface"""

    def __init__(self, config: Optional[Configuration] = None):
        self._config = config or Configuration()
        self._lock = threading.Lock()

    def read(self) -> Configuration:
        with self._lock:
            return Configuration(ids=list(self._config.ids), api_key=self._config.api_key)

    def write(self, config: Configuration) -> None:
        with self._lock:
            self._config = Configuration(ids=list(config.ids), api_key=config.api_key)


class PriceFetcher:
    """Builds, issues and interprets CoinGecko simple/price requests"""

    def __init__(self, base_url: str = COINGECKO_BASE_URL, timeout: float = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    @property
    def url(self) -> str:
        return f"{self.base_url}{SIMPLE_PRICE_ENDPOINT}"

    def fetch(self, ids, api_key: Optional[str] = None,
              mode: FetchMode = FetchMode.DISPLAY) -> FetchResult:
        """Fetch prices and report the outcome as a FetchResult. Never raises."""
        try:
            entries = self.fetch_entries(ids, api_key, mode)
        except PriceFetchError as e:
            logger.warning(f"{mode.value} fetch failed ({e.kind.value}): {e.message}")
            return FetchResult.failure(e.kind, e.message, e.names)
        return FetchResult.success(entries)

    def fetch_entries(self, ids, api_key: Optional[str] = None,
                      mode: FetchMode = FetchMode.DISPLAY) -> List[PriceEntry]:
        """Fetch and resolve prices, raising PriceFetchError on failure"""
        validating = mode is FetchMode.VALIDATE
        ids = normalize_ids(ids)
        if not ids:
            message = "Enter at least one ticker." if validating else "Set ids in Settings"
            raise PriceFetchError(ErrorKind.NO_IDENTIFIERS, message)

        decoded = self._request_prices(ids, api_key, mode)

        if not validating:
            return [PriceEntry(id=i, usd_price=self._usd(decoded.get(i))) for i in ids]

        missing = []
        no_usd = []
        for i in ids:
            if i not in decoded:
                missing.append(i)
            elif self._usd(decoded[i]) is None:
                no_usd.append(i)

        # dedupe, keep first-seen order
        missing = list(dict.fromkeys(missing))
        no_usd = list(dict.fromkeys(no_usd))
        if missing:
            raise PriceFetchError(ErrorKind.UNKNOWN_IDENTIFIERS,
                                  f"Unknown id(s): {', '.join(missing)}.", missing)
        if no_usd:
            raise PriceFetchError(ErrorKind.NO_USD_PRICE,
                                  f"No USD price for: {', '.join(no_usd)}.", no_usd)

        return [PriceEntry(id=i, usd_price=self._usd(decoded[i])) for i in ids]

    def build_request(self, ids: List[str], api_key: Optional[str],
                      mode: FetchMode) -> dict:
        """Query parameters and headers for one simple/price call"""
        # Validation looks ids up by symbol, display by CoinGecko id
        id_param = 'symbols' if mode is FetchMode.VALIDATE else 'ids'
        params = {'vs_currencies': 'usd', id_param: ','.join(ids)}
        headers = {'Accept': 'application/json', 'Cache-Control': 'no-cache'}
        key = clean_api_key(api_key)
        if key:
            headers[API_KEY_HEADER] = key
        return {'params': params, 'headers': headers}

    def _request_prices(self, ids: List[str], api_key: Optional[str],
                        mode: FetchMode) -> Dict[str, Dict[str, float]]:
        validating = mode is FetchMode.VALIDATE
        request = self.build_request(ids, api_key, mode)
        logger.info(f"Fetching USD prices for {len(ids)} id(s) ({mode.value})")

        try:
            response = requests.get(self.url, timeout=self.timeout, **request)
        except requests.RequestException as e:
            logger.debug(f"CoinGecko request failed: {e}")
            message = "Validation failed: network error." if validating else "Network error"
            raise PriceFetchError(ErrorKind.NETWORK_ERROR, message) from e

        status = response.status_code
        if not 200 <= status <= 299:
            raise self._status_error(status, validating)

        try:
            data = response.json()
        except ValueError as e:
            raise self._decode_error(validating) from e

        if not self._is_price_map(data):
            raise self._decode_error(validating)
        return data

    @staticmethod
    def _status_error(status: int, validating: bool) -> PriceFetchError:
        if status == 429:
            kind = ErrorKind.RATE_LIMITED
            message = "Rate limited (HTTP 429). Try again later or add an API key."
        elif status in (401, 403):
            kind = ErrorKind.UNAUTHORIZED
            message = f"Unauthorized (HTTP {status}). Your API key may be invalid."
        else:
            kind = ErrorKind.HTTP_ERROR
            message = f"Validation failed (HTTP {status})."
        if not validating:
            message = f"HTTP error ({status})"
        return PriceFetchError(kind, message)

    @staticmethod
    def _decode_error(validating: bool) -> PriceFetchError:
        if validating:
            return PriceFetchError(ErrorKind.DECODE_ERROR,
                                   "Validation failed: unexpected response format.")
        return PriceFetchError(ErrorKind.DECODE_ERROR, "Unexpected response format")

    @staticmethod
    def _is_price_map(data) -> bool:
        """True for {id: {currency: finite number}} bodies"""
        if not isinstance(data, dict):
            return False
        for prices in data.values():
            if not isinstance(prices, dict):
                return False
            for value in prices.values():
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    return False
                try:
                    if not math.isfinite(float(value)):
                        return False
                except OverflowError:
                    return False
        return True

    @staticmethod
    def _usd(prices: Optional[dict]) -> Optional[float]:
        if not prices or 'usd' not in prices:
            return None
        return float(prices['usd'])


_default_fetcher = PriceFetcher()


def fetch_for_display(ids, api_key: Optional[str] = None,
                      fetcher: Optional[PriceFetcher] = None) -> FetchResult:
    """Tolerant fetch used for routine refreshes"""
    return (fetcher or _default_fetcher).fetch(ids, api_key, FetchMode.DISPLAY)


def validate_and_build_config(raw_tickers: str, raw_api_key: Optional[str] = None,
                              fetcher: Optional[PriceFetcher] = None) -> Configuration:
    """Run the strict validation fetch and build the Configuration to save.

    Raises PriceFetchError when the tickers cannot all be priced in USD.
    """
    fetcher = fetcher or _default_fetcher
    api_key = clean_api_key(raw_api_key)
    try:
        entries = fetcher.fetch_entries(raw_tickers, api_key, FetchMode.VALIDATE)
    except PriceFetchError as e:
        logger.warning(f"validate fetch failed ({e.kind.value}): {e.message}")
        raise
    return Configuration(ids=[e.id for e in entries], api_key=api_key)


def apply_settings(store, raw_tickers: str, raw_api_key: Optional[str] = None,
                   fetcher: Optional[PriceFetcher] = None) -> Configuration:
    """Validate new settings and persist them only when validation succeeds"""
    config = validate_and_build_config(raw_tickers, raw_api_key, fetcher)
    store.write(config)
    return config


class PriceBoard:
    """Holds the most recently completed fetch for the presentation layer.

    Fetches may overlap; whichever finishes last is what gets shown. Rows from
    the last successful fetch stay visible when a later one fails.
    """

    IDLE_STATUS = "Click the icon to refresh"
    LOADING_STATUS = "Loading…"

    def __init__(self):
        self._lock = threading.Lock()
        self._result: Optional[FetchResult] = None
        self._rows: List[PriceEntry] = []
        self._pending = 0

    def begin(self) -> None:
        with self._lock:
            self._pending += 1

    def abandon(self) -> None:
        """A started fetch ended without a result"""
        with self._lock:
            self._pending = max(0, self._pending - 1)

    def publish(self, result: FetchResult) -> None:
        """Record a completed fetch; the last one to finish wins"""
        with self._lock:
            self._pending = max(0, self._pending - 1)
            self._result = result
            if result.ok:
                self._rows = list(result.entries)

    @property
    def result(self) -> Optional[FetchResult]:
        with self._lock:
            return self._result

    @property
    def is_loading(self) -> bool:
        with self._lock:
            return self._pending > 0

    @property
    def is_error(self) -> bool:
        with self._lock:
            return not self._pending and self._result is not None and not self._result.ok

    def rows(self) -> List[PriceEntry]:
        with self._lock:
            return list(self._rows)

    def status_text(self) -> str:
        with self._lock:
            if self._pending:
                return self.LOADING_STATUS
            if self._result is None:
                return self.IDLE_STATUS
            return self._result.status_text
