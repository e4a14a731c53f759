#!/usr/bin/env python3
"""nextdns-sync - Block/Redirect List Synchronization

Reconciles DNS block and redirect rules built from hosts-style source lists
against a NextDNS profile's denylist and rewrites, pushing only the difference
through the rate-limited NextDNS API.

Behaviour:
    - Block sources provided: the denylist is updated from them.
    - Redirect sources provided: rewrites are updated from them.
    - Only one kind provided: the other kind is left untouched.
    - No sources at all: every denylist entry and rewrite is removed.

Environment variables:

    Provider:
        DNS_PROVIDER                  DNS provider type: "nextdns" (default: nextdns)
        NEXTDNS_PROFILE_ID            NextDNS profile id (legacy: CLIENT_ID), required
        NEXTDNS_API_KEY               NextDNS API key (legacy: AUTH_SECRET), required
        NEXTDNS_API_URL               API base URL (default: https://api.nextdns.io)

    Sources:
        BLOCK_SOURCES                 Comma/whitespace separated URLs or file paths of
                                      block lists (legacy: BLOCK)
        REDIRECT_SOURCES              Comma/whitespace separated URLs or file paths of
                                      redirect lists (legacy: REDIRECT)
        SOURCES_CONFIG_PATH           Path to YAML file or directory of YAML files
                                      (default: /config/sources.yaml)
                                      Example config file:
                                        block:
                                          - https://example.org/hosts.txt
                                        redirect:
                                          - /config/overrides.hosts
                                      Sources from config files take precedence over
                                      BLOCK_SOURCES/REDIRECT_SOURCES.

    Domain exclusions:
        EXCLUDE_DOMAINS               Comma-separated patterns for domains never written.
                                      Supports three formats:
                                        - Exact domain: "auth.example.com"
                                        - Wildcard (fnmatch-style): "*.internal.*", "dev-*"
                                        - Regex (prefix with ~): "~^staging-\\d+\\.example\\.com$"

    API pacing:
        API_BATCH_SIZE                Denylist entries per create call (default: 50)
        API_THROTTLE_SECONDS          Pause after every successful call (default: 4)
        RATE_LIMIT_COOLDOWN_SECONDS   Pause after an HTTP 429 before retrying (default: 60)
        REQUEST_TIMEOUT_SECONDS       NextDNS API request timeout (default: 10)
        SOURCE_TIMEOUT_SECONDS        Source list download timeout (default: 30)

    Runtime:
        LOG_LEVEL                     DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import ipaddress
import json
import logging
import os
import re
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)
from urllib.parse import quote

import requests
import yaml

# =============================================================================
# Constants
# =============================================================================

DEFAULT_NEXTDNS_URL = "https://api.nextdns.io"
DEFAULT_SOURCES_CONFIG_PATH = "/config/sources.yaml"

BLOCK_TARGET = "block"
DISABLED_TARGET = "disabled"

# Hostnames found in almost every hosts file that must never be blocked or redirected
LOCAL_HOSTNAMES = frozenset(
    {
        "localhost",
        "localhost.localdomain",
        "local",
        "broadcasthost",
        "ip6-localhost",
        "ip6-loopback",
        "ip6-localnet",
        "ip6-mcastprefix",
        "ip6-allnodes",
        "ip6-allrouters",
        "ip6-allhosts",
        "0.0.0.0",
    }
)

BLOCKING_ADDRESSES = frozenset({"0.0.0.0", "::", "0:0:0:0:0:0:0:0"})

DOMAIN_RE = re.compile(r"^[A-Za-z0-9_-]+(?:\.[A-Za-z0-9_-]+)*\.?$")

COMMENT_RE = re.compile(r"(?:^|\s)#.*$")

# Adblock element-hiding and scriptlet rules: "example.com##.ad-banner" hides page
# elements, it does not block the domain
COSMETIC_RULE_RE = re.compile(r"\S(?:##|#@#|#\?#|#\$#)")

# =============================================================================
# Logging Setup
# =============================================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class SyncError(Exception):
    """Base class for errors that abort a sync run."""


class ConfigurationError(SyncError):
    """A required setting is missing or invalid."""


class SourceError(SyncError):
    """A block/redirect source list could not be retrieved."""


class RemoteError(SyncError):
    """The DNS provider rejected a call for a reason other than rate limiting."""


# =============================================================================
# Enums
# =============================================================================


class RuleKind(Enum):
    """Kind of remote rule managed by the syncer.

    DENY:    Denylist entries. The filtering service blocks the domain.
    REWRITE: Rewrite entries. The filtering service answers the domain
             with a fixed address.
    """

    DENY = "deny"
    REWRITE = "rewrite"


class Outcome(Enum):
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    FATAL = "fatal"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class DesiredRecord:
    """A record that should exist remotely after the run."""

    key: str
    target: str


@dataclass(frozen=True)
class RemoteRecord:
    """A record currently held by the DNS provider."""

    id: str
    key: str
    target: str


@dataclass(frozen=True)
class RecordPage:
    """One page of a remote listing; ``cursor`` is empty on the last page."""

    records: List[RemoteRecord]
    cursor: str = ""


@dataclass(frozen=True)
class ApiResult:
    """Classified outcome of a single provider call."""

    outcome: Outcome
    data: Any = None
    error: str = ""

    @classmethod
    def success(cls, data: Any = None) -> "ApiResult":
        return cls(outcome=Outcome.SUCCESS, data=data)

    @classmethod
    def rate_limited(cls, error: str) -> "ApiResult":
        return cls(outcome=Outcome.RATE_LIMITED, error=error)

    @classmethod
    def fatal(cls, error: str) -> "ApiResult":
        return cls(outcome=Outcome.FATAL, error=error)

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS


@dataclass
class ReconcilePlan:
    """Remote ids to delete and records to create, in dispatch order."""

    deletes: List[str] = field(default_factory=list)
    creates: List[DesiredRecord] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.deletes and not self.creates


@dataclass
class DispatchReport:
    calls: int = 0
    items: int = 0
    rate_limit_hits: int = 0


@dataclass
class KindSummary:
    deleted: int = 0
    created: int = 0
    skipped: bool = False


@dataclass
class SyncSummary:
    """Per-kind result of one ``sync_once`` run."""

    remove_all: bool = False
    kinds: Dict[RuleKind, KindSummary] = field(default_factory=dict)


# =============================================================================
# Configuration
# =============================================================================


def find_config_files(config_path: str) -> List[str]:
    """Find all .yaml config files in directory or return single file.

    Args:
        config_path: Path to config file or directory

    Returns:
        List of config file paths (excluding .template files)
    """
    if not config_path:
        return []
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        yaml_files = sorted(path.glob("*.yaml"))
        return [str(f) for f in yaml_files if not f.name.endswith(".template")]

    return []


def _dedupe(items: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            result.append(item)
    return result


def _parse_source_list(value: str) -> List[str]:
    """Split a comma/whitespace separated list of source descriptors."""
    if not value:
        return []
    return _dedupe(part.strip() for part in re.split(r"[,\s]+", value))


def load_sources_from_yaml(config_path: str) -> Tuple[List[str], List[str]]:
    """Collect block and redirect sources from YAML config file(s).

    Unreadable or malformed files are logged and skipped.
    """
    block: List[str] = []
    redirect: List[str] = []

    for config_file in find_config_files(config_path):
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                config_data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load config from {config_file}: {e}")
            continue

        if not isinstance(config_data, dict):
            logger.warning(f"Config file {config_file} is not a mapping, ignoring")
            continue

        for key, bucket in (("block", block), ("redirect", redirect)):
            items = config_data.get(key) or []
            if isinstance(items, str):
                items = [items]
            if not isinstance(items, list):
                logger.warning(f"Config file {config_file}: '{key}' must be a list")
                continue
            bucket.extend(str(item).strip() for item in items if item is not None)

    return _dedupe(block), _dedupe(redirect)


def _env(environ: Mapping[str, str], name: str, legacy: str = "", default: str = "") -> str:
    value = environ.get(name, "")
    if not value and legacy:
        value = environ.get(legacy, "")
    return (value or default).strip()


def _parse_number(environ: Mapping[str, str], name: str, default: float, cast: type) -> Any:
    raw = environ.get(name, "").strip()
    if not raw:
        return cast(default)
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got '{raw}'") from None


@dataclass(frozen=True)
class SyncConfig:
    """Settings for one sync run, resolved once at startup."""

    dns_provider: str = "nextdns"
    profile_id: str = ""
    api_key: str = ""
    api_url: str = DEFAULT_NEXTDNS_URL
    block_sources: Tuple[str, ...] = ()
    redirect_sources: Tuple[str, ...] = ()
    exclude_domains: str = ""
    batch_size: int = 50
    throttle_seconds: float = 4.0
    rate_limit_cooldown_seconds: float = 60.0
    request_timeout_seconds: float = 10.0
    source_timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SyncConfig":
        env = os.environ if environ is None else environ

        block = _parse_source_list(_env(env, "BLOCK_SOURCES", "BLOCK"))
        redirect = _parse_source_list(_env(env, "REDIRECT_SOURCES", "REDIRECT"))

        config_path = _env(env, "SOURCES_CONFIG_PATH", default=DEFAULT_SOURCES_CONFIG_PATH)
        file_block, file_redirect = load_sources_from_yaml(config_path)
        if file_block or file_redirect:
            logger.info(f"Loaded sources from {config_path}")
            block, redirect = file_block, file_redirect

        return cls(
            dns_provider=_env(env, "DNS_PROVIDER", default="nextdns").lower(),
            profile_id=_env(env, "NEXTDNS_PROFILE_ID", "CLIENT_ID"),
            api_key=_env(env, "NEXTDNS_API_KEY", "AUTH_SECRET"),
            api_url=_env(env, "NEXTDNS_API_URL", default=DEFAULT_NEXTDNS_URL),
            block_sources=tuple(block),
            redirect_sources=tuple(redirect),
            exclude_domains=_env(env, "EXCLUDE_DOMAINS"),
            batch_size=_parse_number(env, "API_BATCH_SIZE", 50, int),
            throttle_seconds=_parse_number(env, "API_THROTTLE_SECONDS", 4.0, float),
            rate_limit_cooldown_seconds=_parse_number(
                env, "RATE_LIMIT_COOLDOWN_SECONDS", 60.0, float
            ),
            request_timeout_seconds=_parse_number(env, "REQUEST_TIMEOUT_SECONDS", 10.0, float),
            source_timeout_seconds=_parse_number(env, "SOURCE_TIMEOUT_SECONDS", 30.0, float),
        )

    def sources_for(self, kind: RuleKind) -> Tuple[str, ...]:
        return self.block_sources if kind is RuleKind.DENY else self.redirect_sources

    def validate(self) -> None:
        """Raise ConfigurationError listing every problem found."""
        errors = []

        if self.dns_provider != "nextdns":
            errors.append(f"Unsupported DNS_PROVIDER: {self.dns_provider}. Supported: nextdns")
        if not self.profile_id:
            errors.append("NEXTDNS_PROFILE_ID (or CLIENT_ID) is required")
        if not self.api_key:
            errors.append("NEXTDNS_API_KEY (or AUTH_SECRET) is required")
        if not self.api_url:
            errors.append("NEXTDNS_API_URL must not be empty")
        if self.batch_size < 1:
            errors.append("API_BATCH_SIZE must be at least 1")
        if self.throttle_seconds <= 0:
            errors.append("API_THROTTLE_SECONDS must be positive")
        if self.rate_limit_cooldown_seconds <= 0:
            errors.append("RATE_LIMIT_COOLDOWN_SECONDS must be positive")
        if self.request_timeout_seconds <= 0:
            errors.append("REQUEST_TIMEOUT_SECONDS must be positive")
        if self.source_timeout_seconds <= 0:
            errors.append("SOURCE_TIMEOUT_SECONDS must be positive")

        if errors:
            raise ConfigurationError("; ".join(errors))


# =============================================================================
# Domain Normalization
# =============================================================================


def normalize_domain(domain: str) -> str:
    return domain.strip().lower().rstrip(".")


def _parse_exclude_patterns(value: str) -> List[re.Pattern]:
    """Parse domain exclusion patterns from env var."""
    patterns: List[re.Pattern] = []
    if not value:
        return patterns

    for raw_item in value.split(","):
        item = raw_item.strip()
        if not item:
            continue

        try:
            if item.startswith("~"):
                patterns.append(re.compile(item[1:], re.IGNORECASE))
            elif "*" in item or "?" in item:
                regex_str = re.escape(item).replace(r"\*", ".*").replace(r"\?", ".")
                patterns.append(re.compile(f"^{regex_str}$", re.IGNORECASE))
            else:
                patterns.append(re.compile(f"^{re.escape(item)}$", re.IGNORECASE))
            logger.debug(f"Added exclusion pattern: {item}")
        except re.error as e:
            logger.warning(f"Invalid exclusion pattern '{item}': {e}")

    return patterns


def _is_domain_excluded(domain: str, patterns: Sequence[re.Pattern]) -> bool:
    """Check if a domain matches any exclusion pattern."""
    return any(pattern.search(domain) for pattern in patterns)


def build_desired_state(
    pairs: Iterable[Tuple[str, str]],
    exclude_patterns: Sequence[re.Pattern] = (),
) -> Dict[str, DesiredRecord]:
    """Collapse raw (domain, target) pairs into a mapping keyed by domain.

    The first pair seen for a domain wins; later pairs for the same domain
    are dropped regardless of their target.
    """
    desired: Dict[str, DesiredRecord] = {}
    excluded = 0
    for raw_domain, target in pairs:
        domain = normalize_domain(raw_domain)
        if not domain or domain in desired:
            continue
        if _is_domain_excluded(domain, exclude_patterns):
            excluded += 1
            logger.debug(f"Excluding domain '{domain}' (matches exclusion pattern)")
            continue
        desired[domain] = DesiredRecord(key=domain, target=target)

    if excluded:
        logger.info(f"{excluded} domain(s) excluded by EXCLUDE_DOMAINS")
    return desired


# =============================================================================
# Source List Loading
# =============================================================================


def _strip_comment(line: str) -> str:
    """Drop a ``#`` comment that starts the line or follows whitespace."""
    return COMMENT_RE.sub("", line).strip()


def _is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def _usable_domain(token: str) -> bool:
    return (
        bool(DOMAIN_RE.match(token))
        and token.lower() not in LOCAL_HOSTNAMES
        and not _is_ip(token)
    )


def _parse_block_line(line: str) -> List[str]:
    """Extract blocked domains from a hosts, domain-per-line or ``||domain^`` entry."""
    if COSMETIC_RULE_RE.search(line):
        return []
    content = _strip_comment(line)
    if not content or content.startswith("!"):
        return []

    tokens = content.split()
    if _is_ip(tokens[0]):
        tokens = tokens[1:]

    domains = []
    for token in tokens:
        if token.startswith("||"):
            token = token[2:].split("^", 1)[0]
        if _usable_domain(token):
            domains.append(token)
    return domains


def _parse_rewrite_line(line: str) -> List[Tuple[str, str]]:
    """Extract (domain, ip) pairs from a hosts entry with a routable address."""
    content = _strip_comment(line)
    if not content:
        return []

    tokens = content.split()
    if len(tokens) < 2 or not _is_ip(tokens[0]):
        return []
    ip = tokens[0]
    if ip in BLOCKING_ADDRESSES:
        return []
    return [(domain, ip) for domain in tokens[1:] if _usable_domain(domain)]


class HostsListLoader:
    """Fetches block/redirect lists from URLs or local files."""

    def __init__(self, timeout_seconds: float = 30.0, session: Optional[requests.Session] = None):
        self._timeout = timeout_seconds
        self._session = session or requests.Session()

    def fetch_lines(self, descriptor: str) -> List[str]:
        try:
            if descriptor.startswith(("http://", "https://")):
                response = self._session.get(descriptor, timeout=self._timeout)
                response.raise_for_status()
                return response.text.splitlines()
            return Path(descriptor).read_text("utf-8").splitlines()
        except (requests.exceptions.RequestException, OSError) as e:
            logger.error(f"Failed to fetch source {descriptor}: {e}")
            raise SourceError(f"Failed to fetch source {descriptor}: {e}") from e

    def fetch_block_pairs(self, descriptors: Sequence[str]) -> List[Tuple[str, str]]:
        pairs: List[Tuple[str, str]] = []
        for descriptor in descriptors:
            before = len(pairs)
            for line in self.fetch_lines(descriptor):
                pairs.extend((domain, BLOCK_TARGET) for domain in _parse_block_line(line))
            logger.info(f"Source {descriptor}: {len(pairs) - before} block entries")
        return pairs

    def fetch_rewrite_pairs(self, descriptors: Sequence[str]) -> List[Tuple[str, str]]:
        pairs: List[Tuple[str, str]] = []
        for descriptor in descriptors:
            before = len(pairs)
            for line in self.fetch_lines(descriptor):
                pairs.extend(_parse_rewrite_line(line))
            logger.info(f"Source {descriptor}: {len(pairs) - before} redirect entries")
        return pairs

    def fetch(self, kind: RuleKind, descriptors: Sequence[str]) -> List[Tuple[str, str]]:
        if kind is RuleKind.DENY:
            return self.fetch_block_pairs(descriptors)
        return self.fetch_rewrite_pairs(descriptors)


# =============================================================================
# DNS Filter Provider Interface and Implementations
# =============================================================================


class DNSFilterProvider(ABC):
    """Abstract base class for DNS filtering providers.

    Every call returns an ApiResult instead of raising, so callers can tell
    rate limiting apart from other failures without inspecting messages.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def check_connection(self) -> ApiResult:
        """Check connectivity and credentials against the profile."""
        pass

    @abstractmethod
    def list_denylist(self, cursor: str = "") -> ApiResult:
        """Return a RecordPage of denylist entries."""
        pass

    @abstractmethod
    def add_denylist(self, batch: List[DesiredRecord]) -> ApiResult:
        """Add a batch of domains to the denylist in one call."""
        pass

    @abstractmethod
    def delete_denylist_entry(self, record_id: str) -> ApiResult:
        """Delete one denylist entry by its remote id."""
        pass

    @abstractmethod
    def list_rewrites(self, cursor: str = "") -> ApiResult:
        """Return a RecordPage of rewrite entries."""
        pass

    @abstractmethod
    def add_rewrite(self, record: DesiredRecord) -> ApiResult:
        """Create a single rewrite."""
        pass

    @abstractmethod
    def delete_rewrite(self, record_id: str) -> ApiResult:
        """Delete one rewrite by its remote id."""
        pass


class NextDNSProvider(DNSFilterProvider):
    """NextDNS profile API implementation."""

    def __init__(
        self,
        profile_id: str,
        api_key: str,
        url: str = DEFAULT_NEXTDNS_URL,
        timeout_seconds: float = 10.0,
    ):
        self._url = url.rstrip("/")
        self._profile = f"{self._url}/profiles/{quote(profile_id, safe='')}"
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers.update({"X-Api-Key": api_key})

    @property
    def name(self) -> str:
        return "NextDNS"

    def _call(self, method: str, path: str, **kwargs: Any) -> ApiResult:
        url = f"{self._profile}{path}"
        label = f"{method} {path or '/'}"
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            return ApiResult.fatal(f"{label}: {e}")

        if response.status_code == 429:
            return ApiResult.rate_limited(f"{label}: HTTP 429")

        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            return ApiResult.fatal(f"{label}: {e}")

        if not response.content:
            return ApiResult.success()
        try:
            body = response.json()
        except ValueError as e:
            return ApiResult.fatal(f"{label}: invalid JSON response: {e}")

        # NextDNS reports validation problems in the body, sometimes with a 2xx status
        if isinstance(body, dict) and body.get("errors"):
            return ApiResult.fatal(f"{label}: {json.dumps(body['errors'])}")
        return ApiResult.success(body)

    def check_connection(self) -> ApiResult:
        return self._call("GET", "")

    def _list(
        self,
        path: str,
        cursor: str,
        to_record: Callable[[Dict[str, Any]], RemoteRecord],
    ) -> ApiResult:
        params = {"cursor": cursor} if cursor else None
        result = self._call("GET", path, params=params)
        if not result.ok:
            return result

        body = result.data if isinstance(result.data, dict) else {}
        items = body.get("data")
        if not isinstance(items, list):
            return ApiResult.fatal(f"GET {path}: unexpected response format")

        records = []
        for item in items:
            try:
                records.append(to_record(item))
            except (AttributeError, KeyError, TypeError):
                logger.warning(f"Skipping malformed {path.strip('/')} entry: {item}")

        pagination = (body.get("meta") or {}).get("pagination") or {}
        return ApiResult.success(RecordPage(records=records, cursor=pagination.get("cursor") or ""))

    @staticmethod
    def _deny_record(item: Dict[str, Any]) -> RemoteRecord:
        domain = item["id"]
        if not isinstance(domain, str):
            raise TypeError(domain)
        target = BLOCK_TARGET if item.get("active", True) else DISABLED_TARGET
        return RemoteRecord(id=domain, key=domain, target=target)

    @staticmethod
    def _rewrite_record(item: Dict[str, Any]) -> RemoteRecord:
        record_id, name, content = item["id"], item["name"], item["content"]
        if not all(isinstance(v, str) for v in (record_id, name, content)):
            raise TypeError(item)
        return RemoteRecord(id=record_id, key=name, target=content)

    def list_denylist(self, cursor: str = "") -> ApiResult:
        return self._list("/denylist", cursor, self._deny_record)

    def add_denylist(self, batch: List[DesiredRecord]) -> ApiResult:
        payload = [{"id": record.key, "active": True} for record in batch]
        result = self._call("POST", "/denylist", json=payload)
        if result.ok:
            logger.debug(f"Added {len(batch)} denylist entries")
        return result

    def delete_denylist_entry(self, record_id: str) -> ApiResult:
        result = self._call("DELETE", f"/denylist/{quote(record_id, safe='')}")
        if result.ok:
            logger.debug(f"Deleted denylist entry: {record_id}")
        return result

    def list_rewrites(self, cursor: str = "") -> ApiResult:
        return self._list("/rewrites", cursor, self._rewrite_record)

    def add_rewrite(self, record: DesiredRecord) -> ApiResult:
        payload = {"name": record.key, "content": record.target}
        result = self._call("POST", "/rewrites", json=payload)
        if result.ok:
            logger.debug(f"Added rewrite: {record.key} -> {record.target}")
        return result

    def delete_rewrite(self, record_id: str) -> ApiResult:
        result = self._call("DELETE", f"/rewrites/{quote(record_id, safe='')}")
        if result.ok:
            logger.debug(f"Deleted rewrite: {record_id}")
        return result


def create_dns_provider(config: SyncConfig) -> DNSFilterProvider:
    """Factory function to create the configured DNS provider."""
    if config.dns_provider == "nextdns":
        return NextDNSProvider(
            config.profile_id,
            config.api_key,
            url=config.api_url,
            timeout_seconds=config.request_timeout_seconds,
        )
    raise ConfigurationError(
        f"Unsupported DNS provider: '{config.dns_provider}'. Supported providers: nextdns"
    )


# =============================================================================
# Rate-Limited Dispatcher
# =============================================================================

T = TypeVar("T")


def _chunks(items: Sequence[T], size: int) -> Iterator[List[T]]:
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


class RateLimitedDispatcher:
    """Runs provider calls one at a time under a fixed pacing policy.

    After each successful call the dispatcher sleeps ``throttle_seconds``.
    A RATE_LIMITED outcome sleeps ``cooldown_seconds`` and retries the same
    call with no upper bound. A FATAL outcome raises RemoteError and leaves
    the remaining units undispatched.
    """

    def __init__(
        self,
        *,
        batch_size: int = 50,
        throttle_seconds: float = 4.0,
        cooldown_seconds: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.batch_size = batch_size
        self.throttle_seconds = throttle_seconds
        self.cooldown_seconds = cooldown_seconds
        self._sleep = sleep

    def _retry(self, operation: Callable[[], ApiResult], description: str) -> Tuple[ApiResult, int]:
        rate_limit_hits = 0
        while True:
            result = operation()
            if result.outcome is Outcome.SUCCESS:
                return result, rate_limit_hits
            if result.outcome is Outcome.RATE_LIMITED:
                rate_limit_hits += 1
                logger.warning(
                    f"Rate limit hit while trying to {description}, "
                    f"waiting {self.cooldown_seconds:g} seconds"
                )
                self._sleep(self.cooldown_seconds)
                continue
            logger.error(f"Failed to {description}: {result.error}")
            raise RemoteError(f"Failed to {description}: {result.error}")

    def call(self, operation: Callable[[], ApiResult], description: str) -> ApiResult:
        """Invoke ``operation`` until it stops being rate limited."""
        result, _ = self._retry(operation, description)
        return result

    def _dispatch_units(
        self,
        units: Iterable[Tuple[Any, int]],
        operation: Callable[[Any], ApiResult],
        description: str,
    ) -> DispatchReport:
        report = DispatchReport()
        for unit, size in units:
            _, rate_limit_hits = self._retry(lambda: operation(unit), description)
            report.calls += 1
            report.items += size
            report.rate_limit_hits += rate_limit_hits
            self._sleep(self.throttle_seconds)
        return report

    def dispatch_batched(
        self,
        items: Sequence[T],
        operation: Callable[[List[T]], ApiResult],
        description: str = "save batch",
    ) -> DispatchReport:
        units = ((batch, len(batch)) for batch in _chunks(items, self.batch_size))
        return self._dispatch_units(units, operation, description)

    def dispatch_each(
        self,
        items: Sequence[T],
        operation: Callable[[T], ApiResult],
        description: str = "apply change",
    ) -> DispatchReport:
        return self._dispatch_units(((item, 1) for item in items), operation, description)


# =============================================================================
# Reconciliation
# =============================================================================


def read_remote_state(
    list_page: Callable[[str], ApiResult],
    dispatcher: RateLimitedDispatcher,
    description: str,
) -> List[RemoteRecord]:
    """Read every page of a remote listing, following pagination cursors."""
    records: List[RemoteRecord] = []
    cursor = ""
    seen_cursors = set()
    while True:
        page: RecordPage = dispatcher.call(lambda: list_page(cursor), description).data
        records.extend(page.records)
        if not page.cursor or page.cursor in seen_cursors:
            return records
        seen_cursors.add(page.cursor)
        cursor = page.cursor


def reconcile(
    desired: Mapping[str, DesiredRecord], remote: Iterable[RemoteRecord]
) -> ReconcilePlan:
    """Diff desired state against remote state in a single pass.

    - Key desired, same target: left untouched and not recreated.
    - Key desired, different target: deleted, then recreated from desired.
    - Key already satisfied by an earlier remote record: deleted as duplicate.
    - Key not desired: left untouched.
    """
    pending = dict(desired)
    satisfied = set()
    plan = ReconcilePlan()

    for record in remote:
        key = normalize_domain(record.key)
        if key in satisfied:
            logger.debug(f"Removing duplicate remote record {record.id} for {key}")
            plan.deletes.append(record.id)
            continue

        wanted = pending.get(key)
        if wanted is None:
            continue
        if wanted.target == record.target:
            satisfied.add(key)
            del pending[key]
        else:
            logger.debug(f"Replacing {key}: {record.target} -> {wanted.target}")
            plan.deletes.append(record.id)

    plan.creates = list(pending.values())
    return plan


def plan_remove_all(remote: Iterable[RemoteRecord]) -> ReconcilePlan:
    return ReconcilePlan(deletes=[record.id for record in remote])


# =============================================================================
# Core Syncer
# =============================================================================


@dataclass(frozen=True)
class KindOperations:
    label: str
    list_page: Callable[[str], ApiResult]
    create: Callable[[Any], ApiResult]
    delete: Callable[[str], ApiResult]
    batched_create: bool


class NextDNSSyncer:
    """Runs the deny phase, then the rewrite phase, against one provider."""

    def __init__(
        self,
        *,
        config: SyncConfig,
        provider: DNSFilterProvider,
        loader: HostsListLoader,
        dispatcher: RateLimitedDispatcher,
    ):
        self.config = config
        self.provider = provider
        self.loader = loader
        self.dispatcher = dispatcher
        self.exclude_patterns = _parse_exclude_patterns(config.exclude_domains)
        self._operations = {
            RuleKind.DENY: KindOperations(
                label="denylist",
                list_page=provider.list_denylist,
                create=provider.add_denylist,
                delete=provider.delete_denylist_entry,
                batched_create=True,
            ),
            RuleKind.REWRITE: KindOperations(
                label="rewrites",
                list_page=provider.list_rewrites,
                create=provider.add_rewrite,
                delete=provider.delete_rewrite,
                batched_create=False,
            ),
        }

    def verify_connection(self) -> None:
        """Check credentials, waiting out rate limits. Raises RemoteError when unreachable."""
        self.dispatcher.call(self.provider.check_connection, f"connect to {self.provider.name}")
        logger.info(f"{self.provider.name} connection successful")

    def read_remote(self, kind: RuleKind) -> List[RemoteRecord]:
        ops = self._operations[kind]
        logger.info(f"Fetching existing {ops.label} from {self.provider.name}")
        records = read_remote_state(ops.list_page, self.dispatcher, f"list {ops.label}")
        logger.info(f"Found {len(records)} existing {ops.label}")
        return records

    def apply_plan(self, kind: RuleKind, plan: ReconcilePlan) -> KindSummary:
        ops = self._operations[kind]
        summary = KindSummary()

        if plan.deletes:
            logger.info(
                f"Removing {len(plan.deletes)} {ops.label} entries from {self.provider.name}"
            )
            report = self.dispatcher.dispatch_each(
                plan.deletes, ops.delete, f"delete {ops.label} entry"
            )
            summary.deleted = report.items

        if plan.creates:
            logger.info(f"Saving {len(plan.creates)} {ops.label} entries to {self.provider.name}")
            if ops.batched_create:
                report = self.dispatcher.dispatch_batched(
                    plan.creates, ops.create, f"save {ops.label} batch"
                )
            else:
                report = self.dispatcher.dispatch_each(
                    plan.creates, ops.create, f"save {ops.label} entry"
                )
            summary.created = report.items

        return summary

    def sync_kind(self, kind: RuleKind, sources: Sequence[str]) -> KindSummary:
        ops = self._operations[kind]
        logger.info(f"Obtain {kind.value} lists from {len(sources)} source(s)")
        pairs = self.loader.fetch(kind, sources)

        logger.info(f"Prepare {ops.label}")
        desired = build_desired_state(pairs, self.exclude_patterns)
        plan = reconcile(desired, self.read_remote(kind))
        logger.info(
            f"Prepared {len(desired)} {kind.value} domains: "
            f"{len(plan.deletes)} to remove, {len(plan.creates)} to create, "
            f"{len(desired) - len(plan.creates)} already up to date"
        )
        return self.apply_plan(kind, plan)

    def remove_all(self, kind: RuleKind) -> KindSummary:
        return self.apply_plan(kind, plan_remove_all(self.read_remote(kind)))

    def sync_once(self) -> SyncSummary:
        summary = SyncSummary()
        sources = {kind: self.config.sources_for(kind) for kind in RuleKind}

        if not any(sources.values()):
            logger.info(f"No sources provided, removing all settings from {self.provider.name}")
            summary.remove_all = True
            for kind in RuleKind:
                summary.kinds[kind] = self.remove_all(kind)
            return summary

        for kind in RuleKind:
            if not sources[kind]:
                logger.info(
                    f"No {kind.value} sources provided, leaving {kind.value} entries untouched"
                )
                summary.kinds[kind] = KindSummary(skipped=True)
                continue
            summary.kinds[kind] = self.sync_kind(kind, sources[kind])

        return summary


# =============================================================================
# Main
# =============================================================================


def build_syncer(config: SyncConfig) -> NextDNSSyncer:
    return NextDNSSyncer(
        config=config,
        provider=create_dns_provider(config),
        loader=HostsListLoader(timeout_seconds=config.source_timeout_seconds),
        dispatcher=RateLimitedDispatcher(
            batch_size=config.batch_size,
            throttle_seconds=config.throttle_seconds,
            cooldown_seconds=config.rate_limit_cooldown_seconds,
        ),
    )


def log_startup(config: SyncConfig) -> None:
    logger.info(f"nextdns-sync: hosts lists -> {config.dns_provider}")
    logger.info(f"Block sources: {len(config.block_sources)}")
    logger.info(f"Redirect sources: {len(config.redirect_sources)}")
    logger.info(
        f"API pacing: batch {config.batch_size}, throttle {config.throttle_seconds:g}s, "
        f"rate limit cooldown {config.rate_limit_cooldown_seconds:g}s"
    )


def main():
    """Main entry point."""
    try:
        config = SyncConfig.from_env()
        config.validate()
        log_startup(config)
        syncer = build_syncer(config)
        syncer.verify_connection()
        summary = syncer.sync_once()
    except KeyboardInterrupt:
        logger.info("Shutting down, remote state is partially converged; rerun to finish")
        return
    except ConfigurationError as e:
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)
    except SyncError as e:
        logger.error(f"Sync failed: {e}")
        sys.exit(1)

    for kind, result in summary.kinds.items():
        if result.skipped:
            continue
        logger.info(f"{kind.value}: {result.deleted} removed, {result.created} created")
    logger.info("FINISHED")


if __name__ == "__main__":
    main()
