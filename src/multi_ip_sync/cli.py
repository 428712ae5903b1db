#!/usr/bin/env python3
"""multi-ip-sync - Public IP to Site Backend Reconciliation

Samples the public egress addresses of this host from an IP-echo service and
keeps the backend list of one site on a site-management API in sync with
them. Meant to be run periodically (cron, systemd timer, Kubernetes CronJob);
every run is a single pass and any error aborts the run.

Run flow:
    load config -> resolve site -> sample IPs -> check backends -> update

Environment variables:

    Site API:
        API_KEY                API key sent as the "api-key" header (required)
        API_SECRET             API secret sent as the "api-secret" header (required)
        API                    Site-management API base URL, e.g. https://waf.example.com/api
        SITE_DOMAIN            Substring used to pick the site by domain
                               (first site in listing order whose domain contains it)

    Sampling:
        IP_SET_COUNT           Number of distinct public IPs to collect (default: 2)
        IP_ECHO_URL            Plain-text IP echo endpoint (default: https://ip.3322.net)

    Runtime:
        REQUEST_TIMEOUT_SECONDS  Timeout for every outbound HTTP call (default: unset, no timeout)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)

    Config file fallback (used when API_KEY/API_SECRET are not set):
        -c / --config          Path to a JSON (or YAML) file (default: config.json)
                               Example:
                                 {
                                   "ip_set_count": 2,
                                   "api_key": "...",
                                   "api_secret": "...",
                                   "api": "https://waf.example.com/api",
                                   "site_domain": "example.com"
                                 }
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

import requests
import typer
import yaml

# =============================================================================
# Configuration
# =============================================================================

# Runtime configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
IP_ECHO_URL = os.getenv("IP_ECHO_URL", "https://ip.3322.net")
# Unset means no timeout, same as plain requests
_timeout_env = os.getenv("REQUEST_TIMEOUT_SECONDS", "").strip()
REQUEST_TIMEOUT_SECONDS: Optional[float] = float(_timeout_env) if _timeout_env else None

DEFAULT_CONFIG_PATH = "config.json"
DEFAULT_IP_SET_COUNT = 2

# Sampling budget
MAX_SAMPLE_ATTEMPTS = 30
SAMPLE_INTERVAL_SECONDS = 1.0

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/58.0.3029.110 Safari/537.3"
)

# Placeholder values written for every backend on update
BACKEND_ROW_KEY = 21
BACKEND_STATE_UP = "up"
BACKEND_WEIGHT = 1
BACKEND_INDEX = 0

# =============================================================================
# Logging Setup
# =============================================================================

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
    """Base class for every error that aborts a run."""


class ConfigError(SyncError):
    """Credentials missing or config file unreadable/invalid."""


class NetworkError(SyncError):
    """Transport failure on an outbound HTTP call."""


class DecodeError(SyncError):
    """Malformed JSON envelope or backend payload."""


class NotFoundError(SyncError):
    """No site matches the configured domain substring."""


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Config:
    """Resolved run configuration."""

    ip_set_count: int = DEFAULT_IP_SET_COUNT
    api_key: str = ""
    api_secret: str = ""
    api: str = ""
    site_domain: str = ""


@dataclass(frozen=True)
class Site:
    """A site as listed by the site-management API."""

    id: int
    domain: str


@dataclass(frozen=True)
class Backend:
    """One upstream entry behind a site."""

    row_key: int
    state: str
    addr: str
    weight: int
    index: int

    WIRE_FIELDS = {
        "_rowKey": ("row_key", int),
        "state": ("state", str),
        "addr": ("addr", str),
        "weight": ("weight", int),
        "_index": ("index", int),
    }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Backend":
        """Build a Backend from its wire form. Missing fields take empty values."""
        values: Dict[str, Any] = {}
        for wire_name, (attr, expected) in cls.WIRE_FIELDS.items():
            value = data.get(wire_name)
            if value is None:
                values[attr] = expected()
                continue
            if not isinstance(value, expected) or isinstance(value, bool):
                raise DecodeError(
                    f"backend field '{wire_name}' must be {expected.__name__}, "
                    f"got {type(value).__name__}"
                )
            values[attr] = value
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_rowKey": self.row_key,
            "state": self.state,
            "addr": self.addr,
            "weight": self.weight,
            "_index": self.index,
        }


# =============================================================================
# Config Loading
# =============================================================================

CONFIG_FIELDS = {
    "ip_set_count": int,
    "api_key": str,
    "api_secret": str,
    "api": str,
    "site_domain": str,
}


def load_config_from_env() -> Config:
    """Build a Config from environment variables.

    IP_SET_COUNT defaults to 2. API_KEY and API_SECRET must both be set.
    """
    raw_count = os.getenv("IP_SET_COUNT", "").strip()
    if raw_count:
        try:
            ip_set_count = int(raw_count)
        except ValueError as e:
            raise ConfigError(f"invalid IP_SET_COUNT: {e}") from e
    else:
        ip_set_count = DEFAULT_IP_SET_COUNT

    config = Config(
        ip_set_count=ip_set_count,
        api_key=os.getenv("API_KEY", ""),
        api_secret=os.getenv("API_SECRET", ""),
        api=os.getenv("API", ""),
        site_domain=os.getenv("SITE_DOMAIN", ""),
    )

    if not config.api_key or not config.api_secret:
        raise ConfigError("API_KEY and API_SECRET are required")

    return config


def load_config_from_file(path: str) -> Config:
    """Parse a config file into a Config.

    JSON by default; .yaml/.yml files go through PyYAML. Missing keys take
    empty values, no defaults are applied.
    """
    config_path = Path(path)
    try:
        text = config_path.read_text("utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e

    try:
        if config_path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot parse config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(
            f"config file {path} must contain an object, got {type(data).__name__}"
        )

    values: Dict[str, Any] = {}
    for key, expected in CONFIG_FIELDS.items():
        value = data.get(key)
        if value is None:
            values[key] = expected()
            continue
        # bool is an int subclass; reject it for ip_set_count
        if not isinstance(value, expected) or isinstance(value, bool):
            raise ConfigError(
                f"config file {path}: '{key}' must be {expected.__name__}, "
                f"got {type(value).__name__}"
            )
        values[key] = value

    return Config(**values)


def load_config(path: Optional[str]) -> Config:
    """Resolve configuration: environment first, then the config file."""
    try:
        config = load_config_from_env()
        if config.api_key:
            logger.debug("Loaded configuration from environment")
            return config
    except ConfigError as e:
        logger.debug(f"Environment configuration not usable: {e}")

    if not path:
        raise ConfigError("failed to load configuration from environment or file")

    if os.path.exists(path):
        try:
            config = load_config_from_file(path)
            logger.debug(f"Loaded configuration from {path}")
            return config
        except ConfigError as e:
            logger.warning(str(e))
    else:
        logger.debug(f"Config file {path} does not exist")

    raise ConfigError("failed to load configuration from environment or file")


def build_headers(config: Config) -> Dict[str, str]:
    """Headers sent with every site-management API call."""
    return {
        "User-Agent": USER_AGENT,
        "api-key": config.api_key,
        "api-secret": config.api_secret,
    }


# =============================================================================
# IP Sampler
# =============================================================================


class IPSampler:
    """Collects distinct public IPs from a plain-text IP echo service.

    Every request goes out on a new connection so that hosts behind rotating
    NAT or multiple egress links can observe more than one address.
    """

    def __init__(
        self,
        url: str = IP_ECHO_URL,
        max_attempts: int = MAX_SAMPLE_ATTEMPTS,
        interval_seconds: float = SAMPLE_INTERVAL_SECONDS,
        timeout_seconds: Optional[float] = REQUEST_TIMEOUT_SECONDS,
    ):
        self._url = url
        self._max_attempts = max_attempts
        self._interval = interval_seconds
        self._timeout = timeout_seconds

    def fetch_ip(self) -> str:
        # requests.get builds and closes a throwaway session per call
        try:
            response = requests.get(
                self._url,
                headers={"Connection": "close"},
                timeout=self._timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to get public IP from {self._url}: {e}")
            raise NetworkError(str(e)) from e
        return response.text.strip()

    def sample(self, target_count: int) -> Set[str]:
        """Query the echo service until target_count distinct IPs are seen.

        Gives up after max_attempts and returns whatever was collected. A
        failed request aborts sampling even if enough IPs were already seen.
        """
        ip_set: Set[str] = set()
        for attempt in range(1, self._max_attempts + 1):
            ip = self.fetch_ip()
            logger.info(f"Observed public IP {ip} (attempt {attempt}/{self._max_attempts})")
            ip_set.add(ip)
            if len(ip_set) >= target_count:
                break
            time.sleep(self._interval)
        else:
            logger.warning(
                f"Collected {len(ip_set)} of {target_count} distinct IPs "
                f"after {self._max_attempts} attempts"
            )
        return ip_set


# =============================================================================
# Site API Client
# =============================================================================


def _decode_json(response: requests.Response, url: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        logger.error(f"Invalid JSON from {url}: {e}")
        raise DecodeError(f"invalid JSON from {url}: {e}") from e


class SiteAPIClient:
    """Client for the /v1/sites endpoints of the site-management API."""

    def __init__(
        self,
        api_base: str,
        headers: Dict[str, str],
        timeout_seconds: Optional[float] = REQUEST_TIMEOUT_SECONDS,
    ):
        self._api = api_base.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers.update(headers)

    def _site_url(self, site_id: int) -> str:
        return f"{self._api}/v1/sites/{site_id}"

    def _get_json(self, url: str) -> Any:
        try:
            response = self._session.get(url, timeout=self._timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.error(f"GET {url} failed: {e}")
            raise NetworkError(str(e)) from e
        return _decode_json(response, url)

    def list_sites(self) -> List[Site]:
        url = f"{self._api}/v1/sites"
        payload = self._get_json(url)
        if not isinstance(payload, dict):
            raise DecodeError(f"unexpected response from {url}: expected object")

        data = payload.get("data")
        if data is None:
            return []
        if not isinstance(data, list):
            raise DecodeError(
                f"unexpected response from {url}: 'data' is {type(data).__name__}, expected list"
            )

        sites: List[Site] = []
        for item in data:
            if not isinstance(item, dict):
                raise DecodeError(f"malformed site record: {item!r}")
            try:
                sites.append(Site(id=int(item["id"]), domain=str(item.get("domain") or "")))
            except (KeyError, TypeError, ValueError) as e:
                raise DecodeError(f"malformed site record {item!r}: {e}") from e
        logger.debug(f"Listed {len(sites)} site(s)")
        return sites

    def get_backends(self, site_id: int) -> List[Backend]:
        """Fetch the backend list of a site.

        The API returns the list as a JSON string inside the envelope
        ({"data": {"backend": "[...]"}}), so it is decoded twice.
        """
        url = self._site_url(site_id)
        payload = self._get_json(url)

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise DecodeError(f"unexpected response from {url}: missing 'data' object")

        raw_backend = data.get("backend")
        if not isinstance(raw_backend, str):
            raise DecodeError(
                f"unexpected response from {url}: 'backend' is "
                f"{type(raw_backend).__name__}, expected JSON string"
            )

        try:
            items = json.loads(raw_backend)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid backend JSON for site {site_id}: {e}")
            raise DecodeError(f"invalid backend JSON for site {site_id}: {e}") from e

        if items is None:
            return []
        if not isinstance(items, list):
            raise DecodeError(f"backend of site {site_id} is not a list")

        backends: List[Backend] = []
        for item in items:
            if not isinstance(item, dict):
                raise DecodeError(f"malformed backend record: {item!r}")
            backends.append(Backend.from_dict(item))
        return backends

    def put_backends(self, site_id: int, backends: List[Backend]) -> None:
        """Replace the backend list of a site.

        Only transport errors are reported. The response body is not read and
        an error status does not fail the call.
        """
        url = self._site_url(site_id)
        body = {"backend": [b.to_dict() for b in backends]}
        try:
            response = self._session.put(
                url,
                data=json.dumps(body),
                headers={"Content-Type": "application/json"},
                timeout=self._timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"PUT {url} failed: {e}")
            raise NetworkError(str(e)) from e

        if not response.ok:
            logger.warning(
                f"PUT {url} returned HTTP {response.status_code}; update may not have been applied"
            )
        response.close()


def resolve_site(sites: List[Site], domain_substring: str) -> Optional[Site]:
    """Return the first site whose domain contains domain_substring."""
    for site in sites:
        if domain_substring in site.domain:
            return site
    return None


# =============================================================================
# Backend Reconciliation
# =============================================================================


def backends_match(ip_set: Set[str], backends: List[Backend]) -> bool:
    """Check whether the remote backends already carry the sampled IPs.

    Requires the same number of entries and every sampled IP to be present
    among the backend addresses, compared after trimming whitespace.
    """
    if len(ip_set) != len(backends):
        return False
    remote_addrs = {b.addr.strip() for b in backends}
    return all(ip.strip() in remote_addrs for ip in ip_set)


def build_backends(ip_set: Iterable[str]) -> List[Backend]:
    """Backend entries for an update. Existing row keys and weights are not kept."""
    return [
        Backend(
            row_key=BACKEND_ROW_KEY,
            state=BACKEND_STATE_UP,
            addr=ip,
            weight=BACKEND_WEIGHT,
            index=BACKEND_INDEX,
        )
        for ip in sorted(ip_set)
    ]


class BackendReconciler:
    """Compares a site's backends with the sampled IPs and replaces them on mismatch."""

    def __init__(self, client: SiteAPIClient):
        self.client = client

    def check(self, site_id: int, ip_set: Set[str]) -> bool:
        backends = self.client.get_backends(site_id)
        logger.info(
            f"Site {site_id} backends: {', '.join(b.addr.strip() for b in backends) or '(none)'}"
        )
        return backends_match(ip_set, backends)

    def update(self, site_id: int, ip_set: Set[str]) -> None:
        backends = build_backends(ip_set)
        logger.info(
            f"Replacing backends of site {site_id} with: {', '.join(b.addr for b in backends)}"
        )
        self.client.put_backends(site_id, backends)


# =============================================================================
# Core Syncer
# =============================================================================


class MultiIPSyncer:
    """One reconciliation pass: resolve the site, sample IPs, check, then update.

    Stages run strictly in order and any error ends the pass.
    """

    def __init__(
        self,
        *,
        site_client: SiteAPIClient,
        sampler: IPSampler,
        reconciler: BackendReconciler,
        site_domain: str,
        ip_set_count: int,
    ):
        self.site_client = site_client
        self.sampler = sampler
        self.reconciler = reconciler
        self.site_domain = site_domain
        self.ip_set_count = ip_set_count

    def sync_once(self) -> bool:
        """Run one reconciliation pass. Returns True if backends were updated."""
        sites = self.site_client.list_sites()
        site = resolve_site(sites, self.site_domain)
        if site is None:
            raise NotFoundError(f"no site matches domain '{self.site_domain}'")
        logger.info(f"Using site {site.id} ({site.domain})")

        ip_set = self.sampler.sample(self.ip_set_count)
        logger.info(f"Sampled IPs: {', '.join(sorted(ip_set))}")

        if self.reconciler.check(site.id, ip_set):
            logger.info("Backends already up to date")
            return False

        self.reconciler.update(site.id, ip_set)
        logger.info("Backends updated")
        return True


def create_syncer(config: Config) -> MultiIPSyncer:
    """Wire up a syncer from a resolved Config."""
    site_client = SiteAPIClient(config.api, build_headers(config))
    return MultiIPSyncer(
        site_client=site_client,
        sampler=IPSampler(),
        reconciler=BackendReconciler(site_client),
        site_domain=config.site_domain,
        ip_set_count=config.ip_set_count,
    )


# =============================================================================
# Main
# =============================================================================

app = typer.Typer(add_completion=False, help="Sync observed public IPs into a site's backend list.")


@app.command()
def run(
    config_path: str = typer.Option(
        DEFAULT_CONFIG_PATH,
        "-c",
        "--config",
        help="Fallback config file used when API_KEY/API_SECRET are not set.",
    ),
) -> None:
    """Run one reconciliation pass."""
    try:
        config = load_config(config_path)
        logger.info(f"multi-ip-sync: site '{config.site_domain}' on {config.api}")
        logger.info(f"Target distinct IPs: {config.ip_set_count}")
        create_syncer(config).sync_once()
    except SyncError as e:
        logger.error(f"{type(e).__name__}: {e}")
        raise typer.Exit(code=1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        raise typer.Exit(code=1)


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
