#!/usr/bin/env python3
"""
Fail2ban Geo Exporter

Polls fail2ban for the hosts banned in every jail and republishes that state
as Prometheus gauges, labelled with cached geolocation coordinates.

Features:
- Per-(host, jail) ban status gauges that stay at 0 after an unban
- Snapshot diffing between poll cycles (no stale or duplicate series)
- Thread-safe geolocation cache with a 24h TTL (failures are not cached)
- One broken jail never clears the state of the others
- Built-in scrape endpoint and fixed-interval scheduler

License: MIT
"""

from __future__ import annotations

import argparse
import difflib
import logging
import os
import re
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, NamedTuple, Optional, Protocol

import requests
from dotenv import load_dotenv
from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

__version__ = "1.0.0"

LOGGER_NAME = "fail2ban-exporter"

# =============================================================================
# Errors
# =============================================================================


class ExporterError(Exception):
    """Base class for all exporter errors.

    ``category`` is a short, fixed string that is safe to use as a
    Prometheus label value.
    """

    default_category = "unknown"

    def __init__(self, message: str, category: Optional[str] = None):
        super().__init__(message)
        self.category = category or self.default_category


class ConfigError(ExporterError):
    """Raised when configuration validation fails."""

    default_category = "config"


class Fail2BanError(ExporterError):
    """Raised when a fail2ban query cannot be completed."""

    default_category = "command_failed"


class GeoLookupError(ExporterError):
    """Raised when a geolocation lookup fails or returns unusable data."""

    default_category = "lookup_failed"


# Fixed-category labels for errors raised by third-party code. Raw exception
# strings must never become label values: each distinct string would create
# a new time series.
_ERROR_PATTERNS: list[tuple[str, str]] = [
    ("ConnectTimeout",          "connect_timeout"),
    ("ReadTimeout",             "read_timeout"),
    ("TimeoutExpired",          "timeout"),
    ("Timeout",                 "timeout"),
    ("ConnectionError",         "connection_error"),
    ("SSLError",                "ssl_error"),
    ("RetryError",              "retries_exhausted"),
    ("JSONDecodeError",         "json_decode_error"),
    ("FileNotFoundError",       "command_not_found"),
    ("PermissionError",         "permission_denied"),
    ("CalledProcessError",      "command_failed"),
    ("HTTPError",               "http_error"),
    ("ValueError",              "value_error"),
]


def sanitize_error_message(exc: BaseException) -> str:
    """
    Map an exception to a fixed category string for use as a label value.

    An explicit category on an exporter error wins. Otherwise the exception's
    ``__cause__`` and then the exception itself are matched by class name
    against ``_ERROR_PATTERNS``. The fallback is the default category, or the
    class name for foreign exceptions.
    """
    if isinstance(exc, ExporterError) and exc.category != exc.default_category:
        return exc.category

    for candidate in (exc.__cause__, exc):
        if candidate is None:
            continue
        names = [cls.__name__ for cls in type(candidate).__mro__]
        for pattern, label in _ERROR_PATTERNS:
            if any(pattern in name for name in names):
                return label

    if isinstance(exc, ExporterError):
        return exc.category
    return type(exc).__name__[:64]


# =============================================================================
# Environment Variable Validation
# =============================================================================

ENV_PREFIX = "F2B_"

BOOL_ENV_VARS: set[str] = {
    "F2B_RUN_ON_START",
    "F2B_GEO_ENABLED",
    "F2B_LOG_TIMESTAMPS",
}

# name -> (cast, minimum)
NUMERIC_ENV_VARS: dict[str, tuple[type, float]] = {
    "F2B_LISTEN_PORT": (int, 1),
    "F2B_INTERVAL": (int, 1),
    "F2B_COMMAND_TIMEOUT": (float, 0.1),
    "F2B_GEO_TIMEOUT": (float, 0.1),
    "F2B_GEO_MAX_RETRIES": (int, 0),
    "F2B_GEO_CACHE_TTL": (int, 0),
    "F2B_GEO_NEGATIVE_TTL": (int, 0),
    "F2B_GEO_CACHE_MAX_ENTRIES": (int, 1),
}

STRING_ENV_VARS: set[str] = {
    "F2B_LISTEN_ADDRESS",
    "F2B_CLIENT_PATH",
    "F2B_GEO_API_URL",
    "F2B_LOG_LEVEL",
}

VALID_ENV_VARS: set[str] = BOOL_ENV_VARS | set(NUMERIC_ENV_VARS) | STRING_ENV_VARS

VALID_BOOL_VALUES: set[str] = {"true", "false", "1", "0", "yes", "no", "on", "off"}
TRUE_VALUES: set[str] = {"true", "1", "yes", "on"}

VALID_LOG_LEVELS: set[str] = {"DEBUG", "INFO", "WARNING", "WARN", "ERROR", "CRITICAL"}


def validate_bool_value(var_name: str, value: str) -> tuple[bool, Optional[str]]:
    """Return (is_valid, error_message) for a boolean variable."""
    if value.strip().lower() in VALID_BOOL_VALUES:
        return True, None
    return False, (
        f"Invalid value for {var_name}: '{value}'\n"
        f"  Expected one of: true, false, 1, 0, yes, no, on, off (case-insensitive)"
    )


def validate_number_value(var_name: str, value: str) -> tuple[bool, Optional[str]]:
    """Return (is_valid, error_message) for a numeric variable."""
    cast, minimum = NUMERIC_ENV_VARS[var_name]
    kind = "an integer" if cast is int else "a number"
    try:
        number = cast(value.strip())
    except ValueError:
        return False, f"Invalid value for {var_name}: '{value}'\n  Expected {kind}"
    if number < minimum:
        return False, f"Invalid value for {var_name}: '{value}'\n  Must be >= {minimum}"
    return True, None


def suggest_env_vars(unknown_var: str) -> list[str]:
    """Return up to three known variable names close to ``unknown_var``."""
    return difflib.get_close_matches(unknown_var, sorted(VALID_ENV_VARS), n=3, cutoff=0.6)


def validate_env_vars(
    environ: Optional[Mapping[str, str]] = None,
    logger: Optional[logging.Logger] = None,
) -> tuple[bool, list[str]]:
    """
    Validate every F2B_* environment variable.

    Bad values are errors. Unknown names only produce warnings (with
    suggestions when one looks like a typo).

    Returns (is_valid, list_of_errors).
    """
    environ = os.environ if environ is None else environ
    errors: list[str] = []
    warnings: list[str] = []

    for var_name, value in sorted(environ.items()):
        if not var_name.startswith(ENV_PREFIX):
            continue

        if var_name in BOOL_ENV_VARS:
            is_valid, error = validate_bool_value(var_name, value)
        elif var_name in NUMERIC_ENV_VARS:
            is_valid, error = validate_number_value(var_name, value)
        elif var_name in STRING_ENV_VARS:
            is_valid, error = True, None
        else:
            suggestions = suggest_env_vars(var_name)
            if suggestions:
                warnings.append(
                    f"Unknown environment variable: {var_name}={value}\n"
                    f"  Did you mean: {', '.join(suggestions)}?"
                )
            else:
                warnings.append(
                    f"Unknown environment variable: {var_name}={value}\n"
                    f"  This variable will be ignored."
                )
            continue

        if not is_valid:
            errors.append(error)

    if logger and warnings:
        for warning in warnings:
            logger.warning(warning)

    return len(errors) == 0, errors


# =============================================================================
# Configuration
# =============================================================================

GEO_CACHE_TTL_SECONDS = 24 * 60 * 60
DEFAULT_GEO_API_URL = "http://ip-api.com/json/{host}?fields=status,message,lat,lon"


@dataclass
class Config:
    """Configuration loaded from environment variables."""

    # Scrape endpoint
    listen_address: str = "0.0.0.0"
    listen_port: int = 9111

    # Scheduler
    interval: int = 30
    run_on_start: bool = True

    # fail2ban collaborator
    client_path: str = "fail2ban-client"
    command_timeout: float = 10.0

    # Geolocation
    geo_enabled: bool = True
    geo_api_url: str = DEFAULT_GEO_API_URL
    geo_timeout: float = 5.0
    geo_max_retries: int = 0
    geo_cache_ttl: int = GEO_CACHE_TTL_SECONDS
    geo_negative_ttl: int = 0  # 0 = failed lookups are never cached
    geo_cache_max_entries: int = 10000

    # Logging
    log_level: str = "INFO"
    log_timestamps: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """
        Load configuration from environment variables.

        When ``environ`` is omitted, a ``.env`` file is loaded into the
        process environment first.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        def get_bool(key: str, default: bool) -> bool:
            return environ.get(key, str(default)).strip().lower() in TRUE_VALUES

        return cls(
            listen_address=environ.get("F2B_LISTEN_ADDRESS", "0.0.0.0"),
            listen_port=int(environ.get("F2B_LISTEN_PORT", "9111")),
            interval=int(environ.get("F2B_INTERVAL", "30")),
            run_on_start=get_bool("F2B_RUN_ON_START", True),
            client_path=environ.get("F2B_CLIENT_PATH", "fail2ban-client"),
            command_timeout=float(environ.get("F2B_COMMAND_TIMEOUT", "10")),
            geo_enabled=get_bool("F2B_GEO_ENABLED", True),
            geo_api_url=environ.get("F2B_GEO_API_URL", DEFAULT_GEO_API_URL),
            geo_timeout=float(environ.get("F2B_GEO_TIMEOUT", "5")),
            geo_max_retries=int(environ.get("F2B_GEO_MAX_RETRIES", "0")),
            geo_cache_ttl=int(environ.get("F2B_GEO_CACHE_TTL", str(GEO_CACHE_TTL_SECONDS))),
            geo_negative_ttl=int(environ.get("F2B_GEO_NEGATIVE_TTL", "0")),
            geo_cache_max_entries=int(environ.get("F2B_GEO_CACHE_MAX_ENTRIES", "10000")),
            log_level=environ.get("F2B_LOG_LEVEL", "INFO").upper(),
            log_timestamps=get_bool("F2B_LOG_TIMESTAMPS", True),
        )

    def validate(self) -> list[str]:
        """Check cross-field constraints. Returns a list of error messages."""
        errors: list[str] = []
        if not 1 <= self.listen_port <= 65535:
            errors.append(f"Listen port out of range: {self.listen_port}")
        if self.interval < 1:
            errors.append(f"Interval must be at least 1 second: {self.interval}")
        if self.command_timeout <= 0:
            errors.append(f"Command timeout must be positive: {self.command_timeout}")
        if self.geo_timeout <= 0:
            errors.append(f"Geo lookup timeout must be positive: {self.geo_timeout}")
        if self.geo_cache_max_entries < 1:
            errors.append(f"Geo cache size must be at least 1: {self.geo_cache_max_entries}")
        if self.geo_enabled:
            if "{host}" not in self.geo_api_url:
                errors.append(f"Geo API URL must contain a '{{host}}' placeholder: {self.geo_api_url}")
            else:
                try:
                    self.geo_api_url.format(host="192.0.2.1")
                except (KeyError, IndexError, ValueError) as e:
                    errors.append(f"Geo API URL has an unusable placeholder ({e!r}): {self.geo_api_url}")
        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"Unknown log level: {self.log_level}")
        return errors


# =============================================================================
# Data Model
# =============================================================================


class BanKey(NamedTuple):
    """One (jail, host) pair, the unit of reconciliation."""

    jail: str
    host: str


EMPTY_SNAPSHOT: frozenset[BanKey] = frozenset()


@dataclass(frozen=True)
class GeoResult:
    """Coordinates rendered as label values. Empty strings mean unknown."""

    latitude: str = ""
    longitude: str = ""

    @property
    def available(self) -> bool:
        return bool(self.latitude and self.longitude)

    @classmethod
    def from_coordinates(cls, latitude: float, longitude: float) -> "GeoResult":
        return cls(f"{latitude:.4f}", f"{longitude:.4f}")


EMPTY_GEO = GeoResult()


@dataclass(frozen=True)
class GeoCacheEntry:
    result: GeoResult
    expiry: float


# =============================================================================
# Host Validation
# =============================================================================

_IPV4_PATTERN = re.compile(r"\d{1,3}(\.\d{1,3}){3}", re.ASCII)


def is_valid_host(token: str) -> bool:
    """True for a dotted-quad IPv4 literal with every octet in 0-255."""
    if not _IPV4_PATTERN.fullmatch(token):
        return False
    return all(int(octet) <= 255 for octet in token.split("."))


def extract_hosts(output: str, rejected: Optional[dict[str, int]] = None) -> list[str]:
    """
    Extract host identifiers from whitespace-separated command output.

    Tokens that are not well-formed hosts are counted in ``rejected`` and
    dropped. Duplicates are removed, first occurrence wins.
    """
    hosts: dict[str, None] = {}
    for token in output.split():
        if is_valid_host(token):
            hosts.setdefault(token, None)
        elif rejected is not None:
            rejected[token] = rejected.get(token, 0) + 1
    return list(hosts)


# =============================================================================
# Snapshot Differ
# =============================================================================


class SnapshotDiff(NamedTuple):
    """Keys to switch on and keys to switch off after one poll."""

    newly_banned: frozenset[BanKey]
    released: frozenset[BanKey]


def diff_snapshots(previous: Iterable[BanKey], current: Iterable[BanKey]) -> SnapshotDiff:
    """
    Compare two snapshots.

    ``newly_banned`` holds keys present now but not before, ``released`` keys
    present before but not now. The two sets never intersect. Pure function.
    """
    previous = frozenset(previous)
    current = frozenset(current)
    return SnapshotDiff(newly_banned=current - previous, released=previous - current)


# =============================================================================
# fail2ban Client
# =============================================================================


class BanSource(Protocol):
    """What the reconciliation cycle needs from the ban-management service."""

    def service_running(self) -> bool: ...

    def list_jails(self) -> list[str]: ...

    def list_banned_hosts(self, jail: str) -> list[str]: ...

    def version(self) -> str: ...


def run_command(argv: list[str], timeout: float) -> str:
    """Run a command and return its stdout. Raises Fail2BanError on any failure."""
    command = " ".join(argv)
    try:
        result = subprocess.run(
            argv,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=True,
        )
    except subprocess.TimeoutExpired as e:
        raise Fail2BanError(f"'{command}' timed out after {timeout}s", "timeout") from e
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or "").strip()[:200]
        raise Fail2BanError(
            f"'{command}' exited with status {e.returncode}: {stderr}", "command_failed"
        ) from e
    except FileNotFoundError as e:
        raise Fail2BanError(f"'{argv[0]}' not found", "command_not_found") from e
    except OSError as e:
        raise Fail2BanError(f"'{command}' could not be started: {e}", "command_failed") from e
    return result.stdout


def parse_jail_list(output: str) -> list[str]:
    """
    Parse the output of ``fail2ban-client status``.

        Status
        |- Number of jail:      2
        `- Jail list:   sshd, nginx-http-auth
    """
    for line in output.splitlines():
        if "Jail list:" in line:
            raw = line.split(":", 1)[1]
            return [jail.strip() for jail in raw.split(",") if jail.strip()]
    raise Fail2BanError("no 'Jail list:' line in fail2ban-client status output", "unexpected_output")


def parse_version(output: str) -> str:
    """Parse ``Fail2Ban v0.11.2`` (first line of ``--version``) into ``0.11.2``."""
    lines = output.strip().splitlines()
    parts = lines[0].split() if lines else []
    if len(parts) > 1:
        version = parts[1].strip().lstrip("v")
        if version[:1].isdigit():
            return version
    raise Fail2BanError(f"unrecognised version output: {output[:64]!r}", "unexpected_output")


class Fail2BanClient:
    """Queries fail2ban through ``fail2ban-client`` and friends."""

    def __init__(
        self,
        client_path: str = "fail2ban-client",
        timeout: float = 10.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.client_path = client_path
        self.timeout = timeout
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def _client(self, *args: str) -> str:
        return run_command([self.client_path, *args], self.timeout)

    def service_running(self) -> bool:
        """True if systemd reports fail2ban active, or a fail2ban-server process exists."""
        try:
            if run_command(["systemctl", "is-active", "fail2ban"], self.timeout).strip() == "active":
                return True
        except Fail2BanError as e:
            self.logger.debug(f"systemctl check failed: {e}")

        try:
            return bool(run_command(["pgrep", "-x", "fail2ban-server"], self.timeout).strip())
        except Fail2BanError as e:
            self.logger.debug(f"pgrep check failed: {e}")
            return False

    def list_jails(self) -> list[str]:
        return parse_jail_list(self._client("status"))

    def list_banned_hosts(self, jail: str) -> list[str]:
        rejected: dict[str, int] = {}
        hosts = extract_hosts(self._client("get", jail, "banip"), rejected)
        for token, count in list(rejected.items())[:20]:
            self.logger.debug(f"{jail}: ignoring malformed host token {token!r} (x{count})")
        return hosts

    def version(self) -> str:
        return parse_version(self._client("--version"))


# =============================================================================
# Geolocation Lookup
# =============================================================================


def create_http_session(max_retries: int = 0) -> requests.Session:
    """Create an HTTP session. ``max_retries=0`` means a single attempt."""
    session = requests.Session()

    retry_strategy = Retry(
        total=max_retries,
        backoff_factor=1,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET"],
        raise_on_status=False,
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers["User-Agent"] = f"fail2ban-geo-exporter/{__version__}"

    return session


class GeoLookupProvider(Protocol):
    def lookup(self, host: str) -> GeoResult: ...


class IpApiGeoProvider:
    """
    Geolocation through the ip-api.com JSON endpoint.

    ``url_template`` must contain ``{host}``. Any problem (transport, HTTP
    status, payload) is raised as GeoLookupError.
    """

    def __init__(
        self,
        session: requests.Session,
        url_template: str = DEFAULT_GEO_API_URL,
        timeout: float = 5.0,
    ):
        self.session = session
        self.url_template = url_template
        self.timeout = timeout

    def lookup(self, host: str) -> GeoResult:
        try:
            url = self.url_template.format(host=host)
        except (KeyError, IndexError, ValueError) as e:
            raise GeoLookupError(f"Cannot build lookup URL from {self.url_template!r}", "bad_url_template") from e

        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else 0
            raise GeoLookupError(f"{host}: HTTP {status}", f"http_{status}") from e
        except requests.RequestException as e:
            raise GeoLookupError(f"{host}: request failed ({e})") from e
        except ValueError as e:
            raise GeoLookupError(f"{host}: invalid JSON payload", "json_decode_error") from e

        if not isinstance(data, dict):
            raise GeoLookupError(f"{host}: unexpected payload type", "malformed_payload")

        status = data.get("status", "success")
        if status != "success":
            raise GeoLookupError(
                f"{host}: lookup refused ({data.get('message', status)})", "lookup_refused"
            )

        try:
            return GeoResult.from_coordinates(float(data["lat"]), float(data["lon"]))
        except (KeyError, TypeError, ValueError) as e:
            raise GeoLookupError(f"{host}: malformed coordinates", "malformed_payload") from e


# =============================================================================
# Geo Cache
# =============================================================================


class GeoCache:
    """
    Time-bounded host -> GeoResult cache.

    Locking discipline:
      - ``_lock`` guards ``_entries`` and ``_inflight``. It is held only for
        dictionary access, never across the external lookup.
      - The first caller that misses on a host registers an Event in
        ``_inflight`` and performs the lookup. Concurrent callers for the
        same host wait on that Event and then read the cache, so a miss
        costs one external call.
      - Entries are immutable and replaced whole.

    Successful lookups live for ``ttl`` seconds. Failed lookups are not
    cached unless ``negative_ttl`` is positive. Expired entries are refreshed
    on access; when the cache is full, inserting a new host first drops
    expired entries and then the entry closest to expiry.
    """

    def __init__(
        self,
        provider: Optional[GeoLookupProvider],
        ttl: float = GEO_CACHE_TTL_SECONDS,
        negative_ttl: float = 0,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.time,
        wait_timeout: float = 30.0,
        on_error: Optional[Callable[[GeoLookupError], None]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.provider = provider
        self.ttl = ttl
        self.negative_ttl = negative_ttl
        self.max_entries = max_entries
        self.clock = clock
        self.wait_timeout = wait_timeout
        self.on_error = on_error
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self._lock = threading.Lock()
        self._entries: dict[str, GeoCacheEntry] = {}
        self._inflight: dict[str, threading.Event] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _fresh(self, host: str) -> Optional[GeoResult]:
        # Caller holds _lock.
        entry = self._entries.get(host)
        if entry is not None and self.clock() < entry.expiry:
            return entry.result
        return None

    def _store(self, host: str, result: GeoResult, ttl: float, now: float) -> None:
        # Caller holds _lock. ``now`` is the time the lookup started.
        if host not in self._entries and len(self._entries) >= self.max_entries:
            for stale in [h for h, e in self._entries.items() if e.expiry <= now]:
                del self._entries[stale]
            if len(self._entries) >= self.max_entries:
                oldest = min(self._entries, key=lambda h: self._entries[h].expiry)
                del self._entries[oldest]
        self._entries[host] = GeoCacheEntry(result=result, expiry=now + ttl)

    def resolve(self, host: str) -> GeoResult:
        """Return coordinates for ``host``, looking them up on a miss."""
        if self.provider is None:
            return EMPTY_GEO

        with self._lock:
            cached = self._fresh(host)
            if cached is not None:
                return cached
            pending = self._inflight.get(host)
            leader = pending is None
            if leader:
                pending = threading.Event()
                self._inflight[host] = pending

        if not leader:
            if not pending.wait(self.wait_timeout):
                self.logger.debug(f"Timed out waiting for geo lookup of {host}")
            with self._lock:
                cached = self._fresh(host)
            return cached if cached is not None else EMPTY_GEO

        result: Optional[GeoResult] = None
        looked_up_at = self.clock()
        try:
            result = self._lookup(host)
        finally:
            with self._lock:
                if result is not None:
                    self._store(host, result, self.ttl, looked_up_at)
                elif self.negative_ttl > 0:
                    self._store(host, EMPTY_GEO, self.negative_ttl, looked_up_at)
                del self._inflight[host]
            pending.set()

        return result if result is not None else EMPTY_GEO

    def _lookup(self, host: str) -> Optional[GeoResult]:
        try:
            result = self.provider.lookup(host)
        except GeoLookupError as e:
            self.logger.warning(f"Geo lookup failed for {host}: {e}")
            if self.on_error is not None:
                self.on_error(e)
            return None
        self.logger.debug(f"Geo lookup for {host}: {result.latitude}, {result.longitude}")
        return result

    def peek(self, host: str) -> Optional[GeoResult]:
        """Return whatever is stored for ``host``, even if expired. No lookup."""
        with self._lock:
            entry = self._entries.get(host)
        return entry.result if entry is not None else None


# =============================================================================
# Prometheus Metrics
# =============================================================================


class ExporterMetrics:
    """
    Gauges published on the scrape endpoint.

      - fail2ban_ip_banned{ip, jail, lat, lon}
            1 = banned, 0 = released. Series are never removed so consumers
            see the transition.
      - fail2ban_total_banned_ips          size of the current snapshot
      - fail2ban_service_status            1 if fail2ban is running
      - fail2ban_version_info{version}     1 for the detected version
      - fail2ban_exporter_status           1 while the exporter runs

    Exporter health:
      - fail2ban_exporter_errors_total{stage, category}
            category is a fixed string from sanitize_error_message().
      - fail2ban_exporter_last_cycle_timestamp
      - fail2ban_exporter_cycle_duration_seconds (histogram)
      - fail2ban_exporter_geo_cache_entries
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        self._version: Optional[str] = None

        self.ip_banned = Gauge(
            "fail2ban_ip_banned",
            "IP ban status (1 - banned, 0 - unbanned)",
            ["ip", "jail", "lat", "lon"],
            registry=self.registry,
        )

        self.total_banned = Gauge(
            "fail2ban_total_banned_ips",
            "Total number of banned IPs across all jails.",
            registry=self.registry,
        )

        self.service_status = Gauge(
            "fail2ban_service_status",
            "Status of the fail2ban service (1 if running, 0 otherwise).",
            registry=self.registry,
        )

        self.version_info = Gauge(
            "fail2ban_version_info",
            "Version of fail2ban as a string.",
            ["version"],
            registry=self.registry,
        )

        self.exporter_status = Gauge(
            "fail2ban_exporter_status",
            "Status of the fail2ban exporter service (1 if running, 0 otherwise).",
            registry=self.registry,
        )

        self.errors_total = Counter(
            "fail2ban_exporter_errors",
            "Collection errors by stage and sanitized category.",
            ["stage", "category"],
            registry=self.registry,
        )

        self.last_cycle_timestamp = Gauge(
            "fail2ban_exporter_last_cycle_timestamp",
            "Unix timestamp of the last completed reconciliation cycle",
            registry=self.registry,
        )

        self.cycle_duration_seconds = Histogram(
            "fail2ban_exporter_cycle_duration_seconds",
            "Duration of reconciliation cycles in seconds",
            buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60],
            registry=self.registry,
        )

        self.geo_cache_entries = Gauge(
            "fail2ban_exporter_geo_cache_entries",
            "Number of hosts held in the geolocation cache",
            registry=self.registry,
        )

    def set_ban_status(self, key: BanKey, geo: GeoResult, value: int) -> None:
        self.ip_banned.labels(
            ip=key.host, jail=key.jail, lat=geo.latitude, lon=geo.longitude
        ).set(value)

    def set_version(self, version: str) -> None:
        """Publish ``version``, dropping the previous series only when it changed."""
        self.version_info.labels(version=version).set(1)
        if version != self._version:
            if self._version is not None:
                self.version_info.remove(self._version)
            self._version = version

    def record_error(self, stage: str, exc: BaseException) -> None:
        self.errors_total.labels(stage=stage, category=sanitize_error_message(exc)).inc()

    def record_cycle(self, duration: float) -> None:
        self.last_cycle_timestamp.set(time.time())
        self.cycle_duration_seconds.observe(duration)

    def render(self) -> bytes:
        return generate_latest(self.registry)


# =============================================================================
# Reconciliation Cycle
# =============================================================================


@dataclass
class CycleReport:
    """Outcome of one reconciliation cycle."""

    completed: bool = False
    jails_ok: int = 0
    jails_failed: list[str] = field(default_factory=list)
    newly_banned: int = 0
    released: int = 0
    total_banned: int = 0
    duration_seconds: float = 0.0


class ReconciliationCycle:
    """
    One poll -> diff -> publish pass, plus the state carried between passes.

    Owned state:
      - ``_snapshot``: the (jail, host) pairs banned as of the last completed
        cycle. Read and replaced only under ``_lock``, always as a whole
        frozenset.
      - ``_published``: for each key whose series is currently at 1, the
        coordinates used as its labels, so a release zeroes that exact series.
        Guarded by ``_lock`` as well.

    ``run()`` calls are serialised by ``_run_lock``; the cycle is the single
    writer of both the snapshot and the ban gauges.
    """

    def __init__(
        self,
        source: BanSource,
        geo_cache: GeoCache,
        metrics: ExporterMetrics,
        logger: Optional[logging.Logger] = None,
    ):
        self.source = source
        self.geo_cache = geo_cache
        self.metrics = metrics
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self._lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._snapshot: frozenset[BanKey] = EMPTY_SNAPSHOT
        self._published: dict[BanKey, GeoResult] = {}

    @property
    def snapshot(self) -> frozenset[BanKey]:
        with self._lock:
            return self._snapshot

    def published_location(self, key: BanKey) -> Optional[GeoResult]:
        """Coordinates the banned series of ``key`` is labelled with, if any."""
        with self._lock:
            return self._published.get(key)

    def run(self) -> CycleReport:
        """Run one cycle. Never raises for collaborator failures."""
        with self._run_lock:
            report = CycleReport()
            t0 = time.time()

            self._probe_service()

            previous = self.snapshot
            current = self._collect(previous, report)
            if current is not None:
                self._publish(previous, current, report)
                with self._lock:
                    self._snapshot = current
                report.completed = True

            self.metrics.geo_cache_entries.set(len(self.geo_cache))
            report.duration_seconds = time.time() - t0
            if report.completed:
                self.metrics.record_cycle(report.duration_seconds)

        self._log_report(report)
        return report

    def _probe_service(self) -> None:
        self.metrics.exporter_status.set(1)
        self.metrics.service_status.set(1 if self.source.service_running() else 0)
        try:
            self.metrics.set_version(self.source.version())
        except Fail2BanError as e:
            self.logger.debug(f"Could not determine fail2ban version: {e}")

    def _collect(self, previous: frozenset[BanKey], report: CycleReport) -> Optional[frozenset[BanKey]]:
        """Build the current snapshot, or return None if the cycle must abort."""
        try:
            jails = list(dict.fromkeys(self.source.list_jails()))
        except Fail2BanError as e:
            self.logger.error(f"Cannot list jails, keeping previous state: {e}")
            self.metrics.record_error("jail_list", e)
            return None

        keys: set[BanKey] = set()
        for jail in jails:
            try:
                hosts = self.source.list_banned_hosts(jail)
            except Fail2BanError as e:
                self.logger.warning(f"Skipping jail {jail}: {e}")
                self.metrics.record_error("ban_list", e)
                report.jails_failed.append(jail)
                continue
            keys.update(BanKey(jail, host) for host in hosts if is_valid_host(host))
            report.jails_ok += 1

        if jails and report.jails_ok == 0:
            self.logger.error("Every jail query failed, keeping previous state")
            return None

        # Hosts of jails that could not be queried keep their last state.
        failed = set(report.jails_failed)
        keys.update(key for key in previous if key.jail in failed)

        return frozenset(keys)

    def _publish(self, previous: frozenset[BanKey], current: frozenset[BanKey], report: CycleReport) -> None:
        newly_banned, released = diff_snapshots(previous, current)

        for key in sorted(newly_banned):
            geo = self.geo_cache.resolve(key.host)
            self.metrics.set_ban_status(key, geo, 1)
            with self._lock:
                self._published[key] = geo
            self.logger.debug(f"Banned {key.host} in {key.jail} ({geo.latitude}, {geo.longitude})")

        for key in sorted(released):
            with self._lock:
                geo = self._published.pop(key, None)
            if geo is None:
                geo = self.geo_cache.peek(key.host) or EMPTY_GEO
            self.metrics.set_ban_status(key, geo, 0)
            self.logger.debug(f"Released {key.host} from {key.jail}")

        report.newly_banned = len(newly_banned)
        report.released = len(released)
        report.total_banned = len(current)
        self.metrics.total_banned.set(report.total_banned)

    def _log_report(self, report: CycleReport) -> None:
        if not report.completed:
            return
        failed = f", {len(report.jails_failed)} jails skipped" if report.jails_failed else ""
        self.logger.info(
            f"Cycle done in {report.duration_seconds:.2f}s: {report.total_banned} banned, "
            f"{report.newly_banned} new, {report.released} released{failed}"
        )


# =============================================================================
# Scheduler
# =============================================================================


def run_scheduled(
    task: Callable[[], object],
    interval: float,
    stop: threading.Event,
    run_on_start: bool = True,
    logger: Optional[logging.Logger] = None,
    on_error: Optional[Callable[[Exception], None]] = None,
) -> int:
    """
    Call ``task`` every ``interval`` seconds until ``stop`` is set.

    Ticks are sequential, so a slow run delays the next one instead of
    overlapping it. Exceptions from ``task`` are logged and the loop goes on.
    Returns the number of runs.
    """
    logger = logger or logging.getLogger(LOGGER_NAME)
    runs = 0
    next_run = time.monotonic() if run_on_start else time.monotonic() + interval

    while not stop.is_set():
        delay = next_run - time.monotonic()
        if delay > 0 and stop.wait(delay):
            break
        next_run = max(next_run + interval, time.monotonic())

        runs += 1
        try:
            task()
        except Exception as e:
            logger.error(f"Run #{runs} failed: {e}")
            logger.debug("Traceback:", exc_info=True)
            if on_error is not None:
                on_error(e)

    return runs


# =============================================================================
# Entry Point
# =============================================================================


def setup_logging(config: Config) -> logging.Logger:
    """Configure the exporter logger."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logger.level)

    format = "[%(asctime)s] [%(levelname)s] %(message)s" if config.log_timestamps else "[%(levelname)s] %(message)s"
    handler.setFormatter(logging.Formatter(format, datefmt="%Y-%m-%d %H:%M:%S"))

    logger.handlers[:] = [handler]
    logger.propagate = False
    return logger


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Export fail2ban bans with geolocation as Prometheus metrics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  F2B_LISTEN_ADDRESS         Address for /metrics (default: 0.0.0.0)
  F2B_LISTEN_PORT            Port for /metrics (default: 9111)
  F2B_INTERVAL               Seconds between polls (default: 30)
  F2B_RUN_ON_START           Poll immediately on start (default: true)
  F2B_CLIENT_PATH            fail2ban-client executable (default: fail2ban-client)
  F2B_COMMAND_TIMEOUT        Seconds before a fail2ban command is killed (default: 10)
  F2B_GEO_ENABLED            Enrich bans with coordinates (default: true)
  F2B_GEO_API_URL            Lookup URL template containing {host} (default: ip-api.com)
  F2B_GEO_TIMEOUT            Geo lookup timeout in seconds (default: 5)
  F2B_GEO_MAX_RETRIES        Extra attempts per geo lookup (default: 0)
  F2B_GEO_CACHE_TTL          Seconds a location stays cached (default: 86400)
  F2B_GEO_NEGATIVE_TTL       Seconds a failed lookup is cached, 0 = never (default: 0)
  F2B_GEO_CACHE_MAX_ENTRIES  Maximum cached hosts (default: 10000)
  F2B_LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
  F2B_LOG_TIMESTAMPS         Prefix log lines with timestamps (default: true)

Examples:
  # Serve metrics on the default port
  ./fail2ban_exporter.py

  # Poll once and print the metrics
  ./fail2ban_exporter.py --once --no-geo
""",
    )

    parser.add_argument(
        "-v", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "-p", "--port",
        type=int,
        help="Port to serve metrics on (overrides F2B_LISTEN_PORT)",
    )

    parser.add_argument(
        "--listen-address",
        help="Address to bind (overrides F2B_LISTEN_ADDRESS)",
    )

    parser.add_argument(
        "--interval",
        type=int,
        metavar="SECONDS",
        help="Seconds between polls (overrides F2B_INTERVAL)",
    )

    parser.add_argument(
        "--client-path",
        help="Path to fail2ban-client (overrides F2B_CLIENT_PATH)",
    )

    parser.add_argument(
        "--no-geo",
        action="store_true",
        help="Disable geolocation lookups",
    )

    parser.add_argument(
        "-d", "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle, print the metrics and exit",
    )

    parser.add_argument(
        "--validate",
        action="store_true",
        help="Validate configuration and exit",
    )

    return parser.parse_args(argv)


def apply_args(config: Config, args: argparse.Namespace) -> Config:
    """Override ``config`` with the flags given on the command line."""
    if args.port is not None:
        config.listen_port = args.port
    if args.listen_address:
        config.listen_address = args.listen_address
    if args.interval is not None:
        config.interval = args.interval
    if args.client_path:
        config.client_path = args.client_path
    if args.no_geo:
        config.geo_enabled = False
    if args.debug:
        config.log_level = "DEBUG"
    return config


def build_cycle(
    config: Config,
    logger: logging.Logger,
    metrics: Optional[ExporterMetrics] = None,
) -> ReconciliationCycle:
    """Wire the fail2ban client, geo cache and metrics into a cycle."""
    metrics = metrics or ExporterMetrics()
    provider: Optional[IpApiGeoProvider] = None
    if config.geo_enabled:
        provider = IpApiGeoProvider(
            session=create_http_session(config.geo_max_retries),
            url_template=config.geo_api_url,
            timeout=config.geo_timeout,
        )

    geo_cache = GeoCache(
        provider,
        ttl=config.geo_cache_ttl,
        negative_ttl=config.geo_negative_ttl,
        max_entries=config.geo_cache_max_entries,
        wait_timeout=config.geo_timeout * (config.geo_max_retries + 1) + 1,
        on_error=lambda e: metrics.record_error("geo_lookup", e),
        logger=logger,
    )

    return ReconciliationCycle(
        source=Fail2BanClient(config.client_path, config.command_timeout, logger=logger),
        geo_cache=geo_cache,
        metrics=metrics,
        logger=logger,
    )


def load_config(args: argparse.Namespace, environ: Optional[Mapping[str, str]] = None) -> Config:
    """
    Build the effective configuration: environment, then command-line flags.

    Raises ConfigError carrying every problem found.
    """
    is_valid, errors = validate_env_vars(environ)
    if not is_valid:
        raise ConfigError("\n".join(errors))

    try:
        config = apply_args(Config.from_env(environ), args)
    except ValueError as e:
        raise ConfigError(f"Invalid configuration value: {e}") from e

    errors = config.validate()
    if errors:
        raise ConfigError("\n".join(errors))
    return config


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    load_dotenv()
    try:
        config = load_config(args)
    except ConfigError as e:
        logger = setup_logging(Config())
        logger.error("Configuration validation failed:")
        for line in str(e).split("\n"):
            logger.error(f"  {line}")
        return 1

    logger = setup_logging(config)
    validate_env_vars(logger=logger)

    if args.validate:
        logger.info(f"Fail2ban Geo Exporter v{__version__}")
        logger.info("Configuration validation passed!")
        for name, value in vars(config).items():
            logger.info(f"  {name} = {value}")
        return 0

    cycle = build_cycle(config, logger)

    if args.once:
        report = cycle.run()
        sys.stdout.write(cycle.metrics.render().decode("utf-8"))
        return 0 if report.completed else 1

    try:
        start_http_server(config.listen_port, addr=config.listen_address, registry=cycle.metrics.registry)
    except OSError as e:
        logger.error(f"Cannot listen on {config.listen_address}:{config.listen_port}: {e}")
        return 1

    logger.info(f"Fail2ban Geo Exporter v{__version__}")
    logger.info(f"Serving metrics on {config.listen_address}:{config.listen_port}, polling every {config.interval}s")
    cycle.metrics.exporter_status.set(1)

    stop = threading.Event()

    def _signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down after current cycle...")
        stop.set()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    run_scheduled(
        cycle.run,
        config.interval,
        stop,
        run_on_start=config.run_on_start,
        logger=logger,
        on_error=lambda e: cycle.metrics.record_error("cycle", e),
    )

    logger.info("Exporter stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
