#!/usr/bin/env python3
"""
Fail2Ban Cloudflare Sync

Mirrors the IPv4 addresses currently banned by Fail2Ban (the REJECT/DROP
rules in its f2b-* iptables chains) into Cloudflare, so that attackers are
stopped at the edge instead of only at the host firewall.

For every configured domain:
- finds or creates an account-level Rules List (kind=ip)
- replaces the list items with the current set of banned IPs
- finds or creates a zone firewall rule "ip.src in $<list>" with action block

Features:
- Strict IPv4 extraction with de-duplication across chains
- Idempotent list and rule creation
- Per-domain failure isolation with inter-domain pacing
- Optional bounded retry on idempotent requests
- Dry run and configuration validation modes
- Prometheus Pushgateway metrics and webhook notifications

License: MIT
"""

from __future__ import annotations

import argparse
import logging
import os
import re
import subprocess
import sys
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Optional, Set

import requests
from dotenv import dotenv_values, load_dotenv
from prometheus_client import CollectorRegistry, Gauge, Histogram, delete_from_gateway, push_to_gateway
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

__version__ = "1.0.0"

LOGGER_NAME = "fail2ban-cloudflare-sync"
USER_AGENT = f"fail2ban-cloudflare-sync/{__version__}"

CLOUDFLARE_API_URL = "https://api.cloudflare.com/client/v4"
DEFAULT_DOMAINS_FILE = "/etc/fail2ban-cloudflare-sync/domains.env"

# Credential fields every domain must define in the domains file
DOMAIN_FIELDS: tuple[str, ...] = ("email", "api_key", "account_id", "zone_id")

# Cloudflare list names: lowercase letters, digits and underscores
LIST_NAME_RE = re.compile(r"[a-z0-9_]{1,50}")

# Four groups of 1-3 digits, nothing else
STRICT_IPV4_RE = re.compile(r"[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}")

# iptables targets Fail2Ban uses for banned addresses
BLOCKING_TARGETS: Set[str] = {"REJECT", "DROP"}

# Values iptables prints in the "opt" column
IPTABLES_OPT_FLAGS: Set[str] = {"--", "-f", "!f"}

VALID_WEBHOOK_TYPES: Set[str] = {"generic", "discord", "slack"}
VALID_LOG_LEVELS: Set[str] = {"DEBUG", "INFO", "WARNING", "WARN", "ERROR", "CRITICAL"}


# =============================================================================
# Errors
# =============================================================================

class ConfigError(Exception):
    """Raised when the configuration or the domains file is invalid."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class FirewallInspectionError(Exception):
    """Raised when the local firewall state cannot be read."""


class SyncError(Exception):
    """
    Base class for errors raised while talking to Cloudflare.

    Carries the domain being processed and the operation that failed so the
    orchestrator can log and count the failure without parsing messages.
    """

    kind = "sync"

    def __init__(self, domain: str, operation: str, message: str):
        super().__init__(f"{domain}: {operation} failed: {message}")
        self.domain = domain
        self.operation = operation
        self.message = message


class TransportError(SyncError):
    """Request failed, or the response body was empty or not a JSON object."""

    kind = "transport"


class ApiError(SyncError):
    """Well-formed response whose envelope did not report success."""

    kind = "api"

    def __init__(self, domain: str, operation: str, message: str,
                 status_code: Optional[int] = None, errors: Optional[list] = None):
        super().__init__(domain, operation, message)
        self.status_code = status_code
        self.errors = errors or []


class ValidationError(SyncError):
    """A create request claimed success but returned no identifier."""

    kind = "validation"


# =============================================================================
# Configuration
# =============================================================================

def _env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key, str(default)).lower()
    return val in ("true", "1", "yes", "on")


def _env_number(key: str, default: float, cast: Callable = int):
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return cast(default)
    try:
        return cast(raw.strip())
    except ValueError:
        raise ConfigError(f"Invalid value for {key}: '{raw}' (expected a number)")


@dataclass
class Config:
    """Configuration loaded from environment variables."""

    # Domains file with "<domain>;<field>=<value>" lines
    domains_file: str = DEFAULT_DOMAINS_FILE

    # Cloudflare settings
    api_url: str = CLOUDFLARE_API_URL
    list_name: str = "fail2ban"
    list_description: str = "Blocked IPs from Fail2Ban"
    list_item_comment: str = "Blocked by Fail2Ban"
    rule_name: str = "Blocked IPs from Fail2Ban"
    filter_description: str = "Filter Fail2Ban IPs"

    # Firewall inspection
    chain_prefix: str = "f2b-"
    iptables_path: str = "/usr/sbin/iptables"
    iptables_timeout: int = 30

    # Request handling
    request_timeout: int = 30
    max_retries: int = 0
    domain_delay: float = 10.0

    # Logging
    log_level: str = "INFO"
    log_timestamps: bool = True

    # Run behaviour
    dry_run: bool = False
    fail_on_domain_error: bool = False

    # Prometheus metrics
    metrics_enabled: bool = False
    pushgateway_url: str = "localhost:9091"

    # Webhook notifications
    webhook_url: str = ""
    webhook_type: str = "generic"  # generic, discord, slack

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        load_dotenv()

        return cls(
            domains_file=os.getenv("DOMAINS_FILE", DEFAULT_DOMAINS_FILE),
            api_url=os.getenv("CLOUDFLARE_API_URL", CLOUDFLARE_API_URL).rstrip("/"),
            list_name=os.getenv("LIST_NAME", "fail2ban"),
            list_description=os.getenv("LIST_DESCRIPTION", "Blocked IPs from Fail2Ban"),
            list_item_comment=os.getenv("LIST_ITEM_COMMENT", "Blocked by Fail2Ban"),
            rule_name=os.getenv("RULE_NAME", "Blocked IPs from Fail2Ban"),
            filter_description=os.getenv("FILTER_DESCRIPTION", "Filter Fail2Ban IPs"),
            chain_prefix=os.getenv("CHAIN_PREFIX", "f2b-"),
            iptables_path=os.getenv("IPTABLES_PATH", "/usr/sbin/iptables"),
            iptables_timeout=_env_number("IPTABLES_TIMEOUT", 30),
            request_timeout=_env_number("REQUEST_TIMEOUT", 30),
            max_retries=_env_number("MAX_RETRIES", 0),
            domain_delay=_env_number("DOMAIN_DELAY", 10.0, float),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_timestamps=_env_bool("LOG_TIMESTAMPS", True),
            dry_run=_env_bool("DRY_RUN", False),
            fail_on_domain_error=_env_bool("FAIL_ON_DOMAIN_ERROR", False),
            metrics_enabled=_env_bool("METRICS_ENABLED", False),
            pushgateway_url=os.getenv("METRICS_PUSHGATEWAY_URL", "localhost:9091"),
            webhook_url=os.getenv("WEBHOOK_URL", ""),
            webhook_type=os.getenv("WEBHOOK_TYPE", "generic").lower(),
        )

    def validate(self) -> list[str]:
        """Return a list of configuration problems (empty when valid)."""
        errors: list[str] = []

        # The list name ends up inside the rule expression, so keep it to
        # the characters Cloudflare accepts for list names.
        if not LIST_NAME_RE.fullmatch(self.list_name):
            errors.append(
                f"Invalid LIST_NAME: '{self.list_name}'\n"
                f"  Expected 1-50 lowercase letters, digits or underscores"
            )
        if not self.rule_name.strip():
            errors.append("RULE_NAME must not be empty")
        if not self.chain_prefix:
            errors.append("CHAIN_PREFIX must not be empty")
        if self.domain_delay < 0:
            errors.append(f"DOMAIN_DELAY must be >= 0, got {self.domain_delay:g}")
        if self.request_timeout <= 0:
            errors.append(f"REQUEST_TIMEOUT must be > 0, got {self.request_timeout}")
        if self.iptables_timeout <= 0:
            errors.append(f"IPTABLES_TIMEOUT must be > 0, got {self.iptables_timeout}")
        if self.max_retries < 0:
            errors.append(f"MAX_RETRIES must be >= 0, got {self.max_retries}")
        if self.webhook_type not in VALID_WEBHOOK_TYPES:
            errors.append(
                f"Invalid WEBHOOK_TYPE: '{self.webhook_type}'\n"
                f"  Expected one of: generic, discord, slack"
            )
        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(
                f"Invalid LOG_LEVEL: '{self.log_level}'\n"
                f"  Expected one of: DEBUG, INFO, WARNING, ERROR, CRITICAL"
            )
        return errors


@dataclass(frozen=True)
class DomainConfig:
    """Credentials and identifiers for one Cloudflare account/zone pair."""
    name: str
    email: str
    api_key: str = field(repr=False)
    account_id: str
    zone_id: str


def read_domains_file(path: str) -> dict[str, Optional[str]]:
    """Read the raw "<domain>;<field>" mapping from a dotenv-format file."""
    if not os.path.isfile(path):
        raise ConfigError(f"Domains file not found: {path}")
    return dotenv_values(path, interpolate=False)


def load_domain_configs(mapping: Mapping[str, Optional[str]]) -> list[DomainConfig]:
    """
    Build validated domain records from a "<domain>;<field>" -> value mapping.

    Keys for the same domain collapse into one record. Every domain must
    define all of DOMAIN_FIELDS with a non-empty value; any problem fails
    the whole load so that no domain runs with a half-filled record.

    Returns the domains sorted by name.
    """
    fields_by_domain: dict[str, dict[str, str]] = {}
    errors: list[str] = []

    for key, value in mapping.items():
        domain, sep, field_name = key.partition(";")
        domain = domain.strip().lower()
        field_name = field_name.strip()

        if not sep or not domain:
            errors.append(f"Invalid key '{key}': expected '<domain>;<field>'")
            continue
        if field_name not in DOMAIN_FIELDS:
            errors.append(
                f"Unknown field '{field_name}' for {domain} "
                f"(expected one of: {', '.join(DOMAIN_FIELDS)})"
            )
            continue

        fields_by_domain.setdefault(domain, {})[field_name] = (value or "").strip()

    domains: list[DomainConfig] = []
    for name in sorted(fields_by_domain):
        fields = fields_by_domain[name]
        missing = [f for f in DOMAIN_FIELDS if not fields.get(f)]
        if missing:
            errors.append(f"{name}: missing or empty {', '.join(missing)}")
            continue
        domains.append(DomainConfig(name=name, **fields))

    if errors:
        raise ConfigError("Invalid domain configuration", errors)
    if not domains:
        raise ConfigError("No domains configured")

    return domains


# =============================================================================
# Firewall Inspection
# =============================================================================

@dataclass(frozen=True)
class FirewallRule:
    """One rule row from an iptables chain listing."""
    chain: str
    target: str
    source: str


def parse_rule_line(chain: str, line: str) -> Optional[FirewallRule]:
    """
    Parse a rule row of `iptables -n -L <chain>`.

    Rows look like "REJECT all -- 1.2.3.4 0.0.0.0/0 reject-with ...".
    Newer iptables-nft releases leave the opt column blank, which shifts the
    source address one field to the left.
    """
    parts = line.split()
    if len(parts) < 4 or parts[0] in ("Chain", "target"):
        return None

    source = parts[3] if parts[2] in IPTABLES_OPT_FLAGS else parts[2]
    return FirewallRule(chain=chain, target=parts[0], source=source)


class IptablesInspector:
    """Read-only view of iptables chains through the iptables binary."""

    def __init__(self, iptables_path: str = "/usr/sbin/iptables", timeout: int = 30,
                 logger: Optional[logging.Logger] = None):
        self.iptables_path = iptables_path
        self.timeout = timeout
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def _list(self, *args: str) -> str:
        cmd = [self.iptables_path, "-w", "-n", "-L", *args]
        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                check=True,
                timeout=self.timeout,
            )
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()[:200]
            raise FirewallInspectionError(
                f"{' '.join(cmd)} exited with status {e.returncode}: {stderr}"
            ) from e
        except subprocess.TimeoutExpired as e:
            raise FirewallInspectionError(
                f"{' '.join(cmd)} timed out after {self.timeout}s"
            ) from e
        except OSError as e:
            raise FirewallInspectionError(f"Cannot run {self.iptables_path}: {e}") from e
        return result.stdout

    def list_chains(self, prefix: str) -> list[str]:
        """Names of all chains starting with prefix."""
        chains = []
        for line in self._list().splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[0] == "Chain" and parts[1].startswith(prefix):
                chains.append(parts[1])
        return chains

    def list_rules(self, chain: str) -> list[FirewallRule]:
        rules = []
        for line in self._list(chain).splitlines():
            rule = parse_rule_line(chain, line)
            if rule is not None:
                rules.append(rule)
        return rules


def is_strict_ipv4(value: str) -> bool:
    """True if value is exactly four dot-separated groups of 1-3 digits."""
    return STRICT_IPV4_RE.fullmatch(value) is not None


def extract_blocked_ips(inspector, chain_prefix: str = "f2b-",
                        logger: Optional[logging.Logger] = None) -> Set[str]:
    """
    Collect the source addresses of all blocking rules in Fail2Ban chains.

    Only tokens that are plain dotted-quad IPv4 addresses are kept; CIDR
    ranges, IPv6 and anything with extra text are dropped. Inspection errors
    propagate as FirewallInspectionError.
    """
    logger = logger or logging.getLogger(LOGGER_NAME)
    ips: Set[str] = set()

    chains = inspector.list_chains(chain_prefix)
    logger.debug(f"Found {len(chains)} chains with prefix {chain_prefix}: {', '.join(chains)}")

    for chain in chains:
        found = 0
        skipped = 0
        for rule in inspector.list_rules(chain):
            if rule.target not in BLOCKING_TARGETS:
                continue
            if is_strict_ipv4(rule.source):
                ips.add(rule.source)
                found += 1
            else:
                skipped += 1
        skipped_text = f", {skipped} non-IPv4 sources skipped" if skipped else ""
        logger.debug(f"{chain}: {found} blocked IPs{skipped_text}")

    return ips


# =============================================================================
# HTTP Client with Retry
# =============================================================================

def create_http_session(max_retries: int = 0) -> requests.Session:
    """
    Create an HTTP session with bounded retry on idempotent requests.

    Only GET and PUT are retried; list and rule creation is never replayed.
    When retries run out the last response is returned so its error envelope
    can still be reported.
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=max_retries,
        backoff_factor=1,  # 1s, 2s, 4s...
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET", "PUT"],
        raise_on_status=False,
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    return session


# =============================================================================
# Cloudflare API Client
# =============================================================================

def api_error_message(envelope: dict) -> str:
    """Human-readable message from a Cloudflare error envelope."""
    errors = envelope.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        first = errors[0]
        message = first.get("message")
        if message:
            code = first.get("code")
            return f"{message} (code {code})" if code is not None else str(message)
    return "request was not successful (no error message returned)"


class CloudflareClient:
    """Cloudflare API v4 client bound to one configured domain.

    Authenticates with the global API key (X-Auth-Email / X-Auth-Key) of the
    domain's account. Every response must be a JSON object whose "success"
    field is exactly true; anything else raises a SyncError subclass naming
    the domain and the operation.
    """

    def __init__(
        self,
        domain: DomainConfig,
        session: requests.Session,
        base_url: str = CLOUDFLARE_API_URL,
        timeout: int = 30,
        logger: Optional[logging.Logger] = None,
    ):
        self.domain = domain
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.logger = logger or logging.getLogger(LOGGER_NAME)

        self.headers = {
            "X-Auth-Email": domain.email,
            "X-Auth-Key": domain.api_key,
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }

    def _request(self, operation: str, method: str, path: str,
                 payload=None, params: Optional[dict] = None) -> dict:
        """Send one request and return the verified response envelope."""
        name = self.domain.name
        url = f"{self.base_url}{path}"
        self.logger.debug(f"{name}: {method} {path}")

        try:
            response = self.session.request(
                method,
                url,
                headers=self.headers,
                params=params,
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(name, operation, f"request error ({e})") from e

        if not response.content or not response.content.strip():
            raise TransportError(name, operation, f"empty response (HTTP {response.status_code})")

        try:
            envelope = response.json()
        except ValueError as e:
            raise TransportError(
                name, operation, f"malformed response (HTTP {response.status_code})"
            ) from e

        if not isinstance(envelope, dict):
            raise TransportError(
                name, operation, f"malformed response envelope (HTTP {response.status_code})"
            )

        if envelope.get("success") is not True:
            errors = envelope.get("errors")
            raise ApiError(
                name,
                operation,
                api_error_message(envelope),
                status_code=response.status_code,
                errors=errors if isinstance(errors, list) else [],
            )

        return envelope

    def _result_list(self, operation: str, envelope: dict) -> list:
        result = envelope.get("result")
        if not isinstance(result, list):
            raise TransportError(self.domain.name, operation, "malformed result (expected a list)")
        return result

    def list_ip_lists(self) -> list[dict]:
        """All Rules Lists of the domain's account."""
        envelope = self._request(
            "list_lists", "GET", f"/accounts/{self.domain.account_id}/rules/lists"
        )
        return self._result_list("list_lists", envelope)

    def create_ip_list(self, name: str, description: str):
        """Create an IP Rules List and return the created list object."""
        envelope = self._request(
            "create_list",
            "POST",
            f"/accounts/{self.domain.account_id}/rules/lists",
            payload={"name": name, "kind": "ip", "description": description},
        )
        return envelope.get("result")

    def replace_list_items(self, list_id: str, items: list[dict]):
        """Replace every item of a list (PUT overwrites, it does not merge)."""
        envelope = self._request(
            "replace_items",
            "PUT",
            f"/accounts/{self.domain.account_id}/rules/lists/{list_id}/items",
            payload=items,
        )
        return envelope.get("result")

    def list_firewall_rules(self) -> list[dict]:
        """All firewall rules of the domain's zone, following pagination."""
        path = f"/zones/{self.domain.zone_id}/firewall/rules"
        rules: list[dict] = []
        page = 1

        while True:
            envelope = self._request(
                "list_rules", "GET", path, params={"page": page, "per_page": 100}
            )
            rules.extend(self._result_list("list_rules", envelope))

            info = envelope.get("result_info")
            total_pages = info.get("total_pages") if isinstance(info, dict) else None
            if not isinstance(total_pages, int) or page >= total_pages:
                break
            page += 1

        return rules

    def create_firewall_rules(self, rules: list[dict]) -> list:
        envelope = self._request(
            "create_rule",
            "POST",
            f"/zones/{self.domain.zone_id}/firewall/rules",
            payload=rules,
        )
        return self._result_list("create_rule", envelope)


def _log_extra(domain: str, operation: str, outcome: str) -> dict:
    return {"domain": domain, "operation": operation, "outcome": outcome}


# =============================================================================
# Remote List Manager
# =============================================================================

def ensure_list(client: CloudflareClient, list_name: str, description: str) -> str:
    """
    Return the id of the account list named list_name, creating it if absent.

    Errors are not retried here; the caller decides whether to skip the
    domain.
    """
    name = client.domain.name

    for item in client.list_ip_lists():
        if isinstance(item, dict) and item.get("name") == list_name:
            list_id = item.get("id")
            if not list_id:
                raise ValidationError(name, "list_lists", f"list {list_name} has no id")
            client.logger.debug(
                f"Found list {list_name} ({list_id}) for {name}",
                extra=_log_extra(name, "ensure_list", "found"),
            )
            return str(list_id)

    client.logger.info(
        f"List {list_name} not found for {name}. Creating a new one...",
        extra=_log_extra(name, "ensure_list", "missing"),
    )
    created = client.create_ip_list(list_name, description)
    list_id = created.get("id") if isinstance(created, dict) else None
    if not list_id:
        raise ValidationError(name, "create_list", "response did not include a list id")

    client.logger.info(
        f"Created list {list_name} ({list_id}) for {name}",
        extra=_log_extra(name, "ensure_list", "created"),
    )
    return str(list_id)


def _ipv4_sort_key(ip: str) -> tuple:
    return tuple(int(part) for part in ip.split("."))


def replace_list_contents(client: CloudflareClient, list_id: str, ips: Iterable[str],
                          comment: str) -> int:
    """
    Overwrite the list with one item per IP. An empty set empties the list.

    Returns the number of items submitted.
    """
    name = client.domain.name
    items = [{"ip": ip, "comment": comment} for ip in sorted(ips, key=_ipv4_sort_key)]

    client.logger.info(
        f"Updating IP list for {name} ({len(items)} IPs)...",
        extra=_log_extra(name, "replace_items", "started"),
    )
    client.replace_list_items(list_id, items)
    client.logger.info(
        f"IP list successfully updated for {name}.",
        extra=_log_extra(name, "replace_items", "updated"),
    )
    return len(items)


# =============================================================================
# Access Rule Ensurer
# =============================================================================

def build_block_rule(list_name: str, rule_description: str, filter_description: str) -> dict:
    """Firewall rule blocking every source IP found in the named list."""
    return {
        "action": "block",
        "description": rule_description,
        "priority": 1,
        "filter": {
            "expression": f"ip.src in ${list_name}",
            "paused": False,
            "description": filter_description,
        },
    }


def ensure_rule(client: CloudflareClient, list_name: str, rule_description: str,
                filter_description: str) -> bool:
    """
    Make sure the zone has a rule described as rule_description.

    The description is the only key: an existing rule is left untouched even
    when its expression or action differs from what would be created now.

    Returns True when a rule was created, False when it already existed.
    """
    name = client.domain.name

    rules = client.list_firewall_rules()
    if any(isinstance(r, dict) and r.get("description") == rule_description for r in rules):
        client.logger.info(
            f"WAF rule already exists for {name}.",
            extra=_log_extra(name, "ensure_rule", "exists"),
        )
        return False

    client.logger.info(
        f"Creating WAF rule for {name}...",
        extra=_log_extra(name, "ensure_rule", "missing"),
    )
    created = client.create_firewall_rules(
        [build_block_rule(list_name, rule_description, filter_description)]
    )
    if not created or not isinstance(created[0], dict) or not created[0].get("id"):
        raise ValidationError(name, "create_rule", "response did not include a rule id")

    client.logger.info(
        f"WAF rule successfully created for {name}.",
        extra=_log_extra(name, "ensure_rule", "created"),
    )
    return True


# =============================================================================
# Sync Orchestrator
# =============================================================================

@dataclass
class DomainResult:
    """Outcome of one domain in a sync run."""
    domain: str
    list_id: Optional[str] = None
    items_replaced: Optional[int] = None
    rule_created: Optional[bool] = None
    skipped: bool = False
    errors: list[SyncError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class SyncStats:
    """Statistics from the sync run."""
    blocked_ips: int = 0
    results: list[DomainResult] = field(default_factory=list)
    duration_seconds: float = 0.0
    dry_run: bool = False

    @property
    def domains_total(self) -> int:
        return len(self.results)

    @property
    def domains_ok(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def domains_failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)

    @property
    def domains_skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)


def sync_domain(client: CloudflareClient, ips: Set[str], config: Config,
                logger: logging.Logger) -> DomainResult:
    """
    Push the IP set to one domain.

    A failed list lookup skips the domain. Failures replacing the items or
    ensuring the rule are recorded and the remaining step still runs; work
    already applied remotely is not rolled back.
    """
    name = client.domain.name
    result = DomainResult(domain=name)

    try:
        result.list_id = ensure_list(client, config.list_name, config.list_description)
    except SyncError as e:
        logger.error(f"Skipping {name}: {e}", extra=_log_extra(name, e.operation, "failed"))
        result.errors.append(e)
        result.skipped = True
        return result

    try:
        result.items_replaced = replace_list_contents(
            client, result.list_id, ips, config.list_item_comment
        )
    except SyncError as e:
        logger.error(f"Failed to update IP list: {e}", extra=_log_extra(name, e.operation, "failed"))
        result.errors.append(e)

    try:
        result.rule_created = ensure_rule(
            client, config.list_name, config.rule_name, config.filter_description
        )
    except SyncError as e:
        logger.error(f"Failed to ensure WAF rule: {e}", extra=_log_extra(name, e.operation, "failed"))
        result.errors.append(e)

    return result


def sync_domains(
    domains: Iterable[DomainConfig],
    ips: Set[str],
    config: Config,
    client_factory: Callable[[DomainConfig], CloudflareClient],
    logger: logging.Logger,
    sleep: Callable[[float], None] = time.sleep,
    metrics: Optional["MetricsCollector"] = None,
) -> SyncStats:
    """
    Sync every domain in name order, one at a time.

    Waits config.domain_delay seconds between domains to go easy on the
    Cloudflare API. One domain's failure never stops the next one.
    """
    stats = SyncStats(blocked_ips=len(ips))
    start_time = time.time()

    unique = {d.name: d for d in domains}
    for index, name in enumerate(sorted(unique)):
        domain = unique[name]

        if index > 0 and config.domain_delay > 0:
            logger.debug(f"Waiting {config.domain_delay:g}s before processing {name}")
            sleep(config.domain_delay)

        logger.info(f"Processing domain: {name}", extra=_log_extra(name, "sync", "started"))
        result = sync_domain(client_factory(domain), ips, config, logger)
        stats.results.append(result)

        if metrics:
            metrics.record_domain(result)

        if result.ok:
            logger.info(f"Processing complete for {name}", extra=_log_extra(name, "sync", "ok"))
        else:
            logger.warning(
                f"Processing complete for {name} with {len(result.errors)} error(s)",
                extra=_log_extra(name, "sync", "failed"),
            )

    stats.duration_seconds = time.time() - start_time
    return stats


# =============================================================================
# Prometheus Metrics
# =============================================================================

class MetricsCollector:
    """
    Prometheus metrics for one sync run, pushed to a Pushgateway.

    The registry is created fresh for every run and stale series are deleted
    from the gateway before pushing, so a domain that recovered does not keep
    reporting its old errors.
    """

    JOB = "fail2ban-cloudflare-sync"

    def __init__(self, pushgateway_url: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.pushgateway_url = pushgateway_url
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.registry = CollectorRegistry()

        self.blocked_ips = Gauge(
            "fail2ban_cloudflare_sync_blocked_ips",
            "Number of IPs extracted from Fail2Ban chains in the last run",
            registry=self.registry,
        )
        self.domains_total = Gauge(
            "fail2ban_cloudflare_sync_domains_total",
            "Number of domains processed in the last run",
            registry=self.registry,
        )
        self.domains_successful = Gauge(
            "fail2ban_cloudflare_sync_domains_successful",
            "Number of domains synced without errors in the last run",
            registry=self.registry,
        )
        self.domains_failed = Gauge(
            "fail2ban_cloudflare_sync_domains_failed",
            "Number of domains with at least one error in the last run",
            registry=self.registry,
        )
        self.last_run_timestamp = Gauge(
            "fail2ban_cloudflare_sync_last_run_timestamp",
            "Unix timestamp of the last sync run",
            registry=self.registry,
        )
        self.duration_seconds = Histogram(
            "fail2ban_cloudflare_sync_duration_seconds",
            "Duration of the full sync run in seconds",
            buckets=[1, 5, 10, 30, 60, 120, 300, 600],
            registry=self.registry,
        )
        # value: 1 = synced, 0 = failed
        self.domain_status = Gauge(
            "fail2ban_cloudflare_sync_domain_status",
            "Per-domain sync status: 1=success, 0=failed",
            ["domain"],
            registry=self.registry,
        )
        # error_type is the SyncError kind: transport | api | validation
        self.errors = Gauge(
            "fail2ban_cloudflare_sync_errors",
            "Sync errors labelled by domain, operation and error type",
            ["domain", "operation", "error_type"],
            registry=self.registry,
        )

    def record_domain(self, result: DomainResult) -> None:
        self.domain_status.labels(domain=result.domain).set(1 if result.ok else 0)
        for error in result.errors:
            self.errors.labels(
                domain=result.domain,
                operation=error.operation,
                error_type=error.kind,
            ).inc()

    def update_aggregates(self, stats: SyncStats) -> None:
        """Update scalar gauges at end of run."""
        self.blocked_ips.set(stats.blocked_ips)
        self.domains_total.set(stats.domains_total)
        self.domains_successful.set(stats.domains_ok)
        self.domains_failed.set(stats.domains_failed)
        self.last_run_timestamp.set(time.time())
        self.duration_seconds.observe(stats.duration_seconds)

    def push(self) -> bool:
        """Replace this job's metrics on the Pushgateway. Never raises."""
        if not self.pushgateway_url:
            return False
        try:
            try:
                delete_from_gateway(self.pushgateway_url, job=self.JOB)
            except Exception as del_exc:
                self.logger.warning(
                    f"Could not delete stale metrics from Pushgateway "
                    f"({self.pushgateway_url}): {del_exc}"
                )

            push_to_gateway(self.pushgateway_url, job=self.JOB, registry=self.registry)
            self.logger.info(f"Metrics pushed to Pushgateway at {self.pushgateway_url}")
            return True
        except Exception as e:
            self.logger.error(f"Failed to push metrics to {self.pushgateway_url}: {e}")
            return False


# =============================================================================
# Webhook Notifications
# =============================================================================

def send_webhook(config: Config, stats: SyncStats, logger: logging.Logger) -> None:
    """Send the run summary to a webhook (Discord, Slack, or generic)."""
    if not config.webhook_url:
        return

    try:
        if config.webhook_type == "discord":
            payload = _format_discord_webhook(stats)
        elif config.webhook_type == "slack":
            payload = _format_slack_webhook(stats)
        else:
            payload = _format_generic_webhook(stats)

        response = requests.post(
            config.webhook_url,
            json=payload,
            timeout=10,
            headers={"Content-Type": "application/json", "User-Agent": USER_AGENT},
        )
        if response.status_code < 300:
            logger.debug(f"Webhook sent ({config.webhook_type})")
        else:
            logger.warning(f"Webhook returned {response.status_code}: {response.text[:200]}")

    except requests.RequestException as e:
        logger.warning(f"Webhook failed: {e}")


def _failed_domains(stats: SyncStats) -> list[str]:
    return [r.domain for r in stats.results if not r.ok]


def _format_discord_webhook(stats: SyncStats) -> dict:
    """Format stats as a Discord embed."""
    failed = _failed_domains(stats)
    color = 0x2ECC71 if not failed else 0xE74C3C
    fields = [
        {"name": "Blocked IPs", "value": str(stats.blocked_ips), "inline": True},
        {"name": "Domains", "value": f"{stats.domains_ok} ok / {stats.domains_failed} failed", "inline": True},
        {"name": "Duration", "value": f"{stats.duration_seconds:.1f}s", "inline": True},
    ]
    if failed:
        fields.append({"name": "Failed", "value": ", ".join(failed), "inline": False})

    return {
        "embeds": [{
            "title": "Fail2Ban Cloudflare Sync",
            "color": color,
            "fields": fields,
            "footer": {"text": f"v{__version__}"},
        }]
    }


def _format_slack_webhook(stats: SyncStats) -> dict:
    """Format stats as a Slack message."""
    failed = _failed_domains(stats)
    emoji = ":white_check_mark:" if not failed else ":warning:"
    text = (
        f"{emoji} *Fail2Ban Cloudflare Sync*\n"
        f"Blocked IPs: {stats.blocked_ips}\n"
        f"Domains: {stats.domains_ok} ok / {stats.domains_failed} failed\n"
        f"Duration: {stats.duration_seconds:.1f}s"
    )
    if failed:
        text += f"\nFailed: {', '.join(failed)}"
    return {"text": text}


def _format_generic_webhook(stats: SyncStats) -> dict:
    """Format stats as a generic JSON payload."""
    return {
        "event": "fail2ban_cloudflare_sync_complete",
        "version": __version__,
        "blocked_ips": stats.blocked_ips,
        "domains_ok": stats.domains_ok,
        "domains_failed": stats.domains_failed,
        "failed_domains": _failed_domains(stats),
        "duration_seconds": round(stats.duration_seconds, 1),
    }


# =============================================================================
# Sync Run
# =============================================================================

def run_sync(
    config: Config,
    logger: logging.Logger,
    inspector=None,
    client_factory: Optional[Callable[[DomainConfig], CloudflareClient]] = None,
    sleep: Callable[[float], None] = time.sleep,
    metrics: Optional[MetricsCollector] = None,
) -> SyncStats:
    """
    Run one full sync pass.

    Raises ConfigError when no usable domain is configured and
    FirewallInspectionError when iptables cannot be read; in both cases
    nothing is sent to Cloudflare.
    """
    logger.info(f"Fail2Ban Cloudflare Sync v{__version__}")

    domains = load_domain_configs(read_domains_file(config.domains_file))
    logger.info(f"Loaded {len(domains)} domains from {config.domains_file}")

    if inspector is None:
        inspector = IptablesInspector(config.iptables_path, config.iptables_timeout, logger)

    logger.info("Retrieving blocked IPs")
    ips = extract_blocked_ips(inspector, config.chain_prefix, logger)
    logger.info(f"Number of IPs found: {len(ips)}")

    if config.dry_run:
        logger.info("DRY RUN MODE - no changes will be made")
        for domain in domains:
            logger.info(
                f"DRY RUN: Would sync {len(ips)} IPs to list {config.list_name} "
                f"and ensure rule '{config.rule_name}' for {domain.name}"
            )
        return SyncStats(blocked_ips=len(ips), dry_run=True)

    if client_factory is None:
        session = create_http_session(config.max_retries)

        def client_factory(domain: DomainConfig) -> CloudflareClient:
            return CloudflareClient(
                domain,
                session,
                base_url=config.api_url,
                timeout=config.request_timeout,
                logger=logger,
            )

    stats = sync_domains(domains, ips, config, client_factory, logger, sleep=sleep, metrics=metrics)

    if metrics:
        metrics.update_aggregates(stats)
        metrics.push()

    if config.webhook_url:
        send_webhook(config, stats, logger)

    logger.info(
        f"Domains: {stats.domains_ok} synced, {stats.domains_failed} with errors "
        f"({stats.domains_skipped} skipped)"
    )
    logger.info(f"Completed in {stats.duration_seconds:.1f}s")

    return stats


# =============================================================================
# CLI
# =============================================================================

def setup_logging(config: Config) -> logging.Logger:
    """Configure logging with timestamped output."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logger.level)

    format = "[%(asctime)s] [%(levelname)s] %(message)s" if config.log_timestamps else "[%(levelname)s] %(message)s"
    formatter = logging.Formatter(
        format,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)

    logger.addHandler(handler)
    return logger


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Mirror Fail2Ban-banned IPs into Cloudflare IP lists and WAF rules",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  DOMAINS_FILE             Domains file (default: /etc/fail2ban-cloudflare-sync/domains.env)
  CLOUDFLARE_API_URL       Cloudflare API base URL
  LIST_NAME                Cloudflare IP list name (default: fail2ban)
  RULE_NAME                WAF rule description (default: Blocked IPs from Fail2Ban)
  CHAIN_PREFIX             iptables chain prefix (default: f2b-)
  IPTABLES_PATH            iptables binary (default: /usr/sbin/iptables)
  REQUEST_TIMEOUT          Seconds per Cloudflare request (default: 30)
  MAX_RETRIES              Retries for GET/PUT requests (default: 0)
  DOMAIN_DELAY             Seconds to wait between domains (default: 10)
  LOG_LEVEL                DEBUG, INFO, WARNING, ERROR (default: INFO)
  DRY_RUN                  Set to true for dry run mode
  FAIL_ON_DOMAIN_ERROR     Exit 1 when any domain failed (default: false)
  METRICS_ENABLED          Push Prometheus metrics (default: false)
  METRICS_PUSHGATEWAY_URL  Pushgateway address (default: localhost:9091)
  WEBHOOK_URL              Webhook URL for notifications (Discord/Slack/generic)
  WEBHOOK_TYPE             Webhook format: generic, discord, slack (default: generic)

Domains file (one credential per line):
  example.com;email=admin@example.com
  example.com;api_key=0123456789abcdef
  example.com;account_id=...
  example.com;zone_id=...

Examples:
  # One sync pass (run it from cron or a systemd timer)
  ./fail2ban_cloudflare_sync.py

  # Show what would be synced
  ./fail2ban_cloudflare_sync.py --dry-run

  # Validate configuration without running
  ./fail2ban_cloudflare_sync.py --validate
""",
    )

    parser.add_argument(
        "-v", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "-n", "--dry-run",
        action="store_true",
        help="Don't call Cloudflare, just show what would be done",
    )

    parser.add_argument(
        "-d", "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    parser.add_argument(
        "--domains-file",
        help="Domains file (overrides DOMAINS_FILE)",
    )

    parser.add_argument(
        "--delay",
        type=float,
        metavar="SECONDS",
        help="Pause between domains (overrides DOMAIN_DELAY)",
    )

    parser.add_argument(
        "--validate",
        action="store_true",
        help="Validate configuration and exit without syncing",
    )

    parser.add_argument(
        "--pushgateway-url",
        help="Push URL for Prometheus (overrides METRICS_PUSHGATEWAY_URL)",
    )

    parser.add_argument(
        "--no-metrics",
        action="store_true",
        help="Disable Prometheus metrics",
    )

    parser.add_argument(
        "--webhook-url",
        help="Webhook URL for notifications (overrides WEBHOOK_URL)",
    )

    parser.add_argument(
        "--webhook-type",
        choices=["generic", "discord", "slack"],
        help="Webhook format (overrides WEBHOOK_TYPE)",
    )

    return parser.parse_args(argv)


def _log_config_errors(logger: logging.Logger, message: str, errors: list[str]) -> None:
    logger.error(message)
    for error in errors:
        for line in error.split("\n"):
            logger.error(f"  {line}")


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = Config.from_env()
    except ConfigError as e:
        logger = setup_logging(Config())
        logger.error(str(e))
        return 1

    # Override with CLI args
    if args.dry_run:
        config.dry_run = True
    if args.debug:
        config.log_level = "DEBUG"
    if args.domains_file:
        config.domains_file = args.domains_file
    if args.delay is not None:
        config.domain_delay = args.delay
    if args.pushgateway_url:
        config.pushgateway_url = args.pushgateway_url
        config.metrics_enabled = True
    if args.no_metrics:
        config.metrics_enabled = False
    if args.webhook_url:
        config.webhook_url = args.webhook_url
    if args.webhook_type:
        config.webhook_type = args.webhook_type

    logger = setup_logging(config)

    errors = config.validate()
    if errors:
        _log_config_errors(logger, "Configuration validation failed:", errors)
        return 1

    if args.validate:
        try:
            domains = load_domain_configs(read_domains_file(config.domains_file))
        except ConfigError as e:
            _log_config_errors(logger, str(e), e.errors)
            return 1
        logger.info(f"Fail2Ban Cloudflare Sync v{__version__}")
        logger.info("Configuration validation passed!")
        for domain in domains:
            logger.info(f"  {domain.name} (account {domain.account_id}, zone {domain.zone_id})")
        return 0

    return _run_once(config, logger)


def _run_once(config: Config, logger: logging.Logger) -> int:
    """Execute a single sync pass and map the outcome to an exit status."""
    metrics = MetricsCollector(config.pushgateway_url, logger) if config.metrics_enabled else None

    try:
        stats = run_sync(config, logger, metrics=metrics)
    except ConfigError as e:
        _log_config_errors(logger, str(e), e.errors)
        return 1
    except FirewallInspectionError as e:
        logger.error(f"Cannot read Fail2Ban chains, nothing was synced: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        if config.log_level == "DEBUG":
            import traceback
            traceback.print_exc()
        return 1

    if config.fail_on_domain_error and stats.domains_failed:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
