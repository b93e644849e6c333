"""DNS providers used to answer ACME DNS-01 challenges."""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

__all__ = [
    "DNSRecord",
    "DNSProviderError",
    "DNSProvider",
    "DNSProviderConfig",
    "new_dns_provider",
    "MockDNSProvider",
    "CloudflareProvider",
    "AlidnsProvider",
    "Route53Provider",
    "dns_provider_from_env",
]

_HTTP_TIMEOUT = 30.0
_DEFAULT_AWS_REGION = "us-east-1"


@dataclass(frozen=True)
class DNSRecord:
    """A single DNS resource record."""

    type: str
    name: str
    value: str
    ttl: float = 0.0


class DNSProviderError(Exception):
    """Raised when a DNS provider cannot be created or cannot do its work."""


class DNSProvider(ABC):
    """Interface for providers that can add and remove records in a zone."""

    @abstractmethod
    def get_records(self, zone: str) -> list[DNSRecord]:
        """Return all records of a zone."""

    @abstractmethod
    def append_records(self, zone: str, records: Iterable[DNSRecord]) -> list[DNSRecord]:
        """Add records to a zone and return the records that were added."""

    @abstractmethod
    def delete_records(self, zone: str, records: Iterable[DNSRecord]) -> list[DNSRecord]:
        """Remove records from a zone and return the records that were removed."""


@dataclass
class DNSProviderConfig:
    """Settings from which a DNS provider is chosen."""

    provider: str = ""

    cloudflare_api_token: str = ""
    cloudflare_email: str = ""
    cloudflare_api_key: str = ""

    ali_access_key_id: str = ""
    ali_access_key_secret: str = ""

    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    aws_region: str = ""

    digitalocean_token: str = ""

    godaddy_key: str = ""
    godaddy_secret: str = ""

    propagation_timeout: float = 0.0
    polling_interval: float = 0.0


_DEDICATED_PROVIDERS = ("cloudflare", "alidns", "route53", "digitalocean", "godaddy")


def new_dns_provider(config: DNSProviderConfig) -> DNSProvider | None:
    """Create a provider for ``config``.

    Returns None when no provider is named. Named providers need a dedicated
    provider package, so they raise DNSProviderError saying so.
    """
    name = config.provider
    if name == "":
        return None
    if name in _DEDICATED_PROVIDERS:
        raise DNSProviderError(f"{name}: use a dedicated {name} provider package")
    raise DNSProviderError(f"unsupported DNS provider: {name}")


class MockDNSProvider(DNSProvider):
    """In-memory provider for tests."""

    def __init__(self) -> None:
        self._records: dict[str, list[DNSRecord]] = {}

    def get_records(self, zone: str) -> list[DNSRecord]:
        return list(self._records.get(zone, []))

    def append_records(self, zone: str, records: Iterable[DNSRecord]) -> list[DNSRecord]:
        added = list(records)
        self._records.setdefault(zone, []).extend(added)
        return added

    def delete_records(self, zone: str, records: Iterable[DNSRecord]) -> list[DNSRecord]:
        # Deleting clears the whole zone, whatever records are given.
        self._records.pop(zone, None)
        return list(records)


def _unavailable(name: str) -> DNSProviderError:
    return DNSProviderError(f"use a dedicated {name} provider package for production")


class CloudflareProvider(DNSProvider):
    """Cloudflare provider placeholder holding an API token."""

    def __init__(self, api_token: str) -> None:
        self.timeout = _HTTP_TIMEOUT
        self.api_token = api_token
        self.email = ""
        self.api_key = ""
        self.zone_id = ""

    def get_records(self, zone: str) -> list[DNSRecord]:
        raise _unavailable("cloudflare")

    def append_records(self, zone: str, records: Iterable[DNSRecord]) -> list[DNSRecord]:
        raise _unavailable("cloudflare")

    def delete_records(self, zone: str, records: Iterable[DNSRecord]) -> list[DNSRecord]:
        raise _unavailable("cloudflare")


class AlidnsProvider(DNSProvider):
    """Alibaba Cloud DNS provider placeholder."""

    def __init__(self, access_key_id: str, access_key_secret: str) -> None:
        self.timeout = _HTTP_TIMEOUT
        self.access_key_id = access_key_id
        self.access_key_secret = access_key_secret

    def get_records(self, zone: str) -> list[DNSRecord]:
        raise _unavailable("alidns")

    def append_records(self, zone: str, records: Iterable[DNSRecord]) -> list[DNSRecord]:
        raise _unavailable("alidns")

    def delete_records(self, zone: str, records: Iterable[DNSRecord]) -> list[DNSRecord]:
        raise _unavailable("alidns")


class Route53Provider(DNSProvider):
    """AWS Route53 provider placeholder."""

    def __init__(self, access_key_id: str, secret_access_key: str, region: str) -> None:
        self.timeout = _HTTP_TIMEOUT
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self.region = region

    def get_records(self, zone: str) -> list[DNSRecord]:
        raise _unavailable("route53")

    def append_records(self, zone: str, records: Iterable[DNSRecord]) -> list[DNSRecord]:
        raise _unavailable("route53")

    def delete_records(self, zone: str, records: Iterable[DNSRecord]) -> list[DNSRecord]:
        raise _unavailable("route53")


@dataclass
class _EnvView:
    environ: Mapping[str, str] = field(default_factory=dict)

    def get(self, key: str) -> str:
        return self.environ.get(key, "") or ""


def dns_provider_from_env(environ: Mapping[str, str] | None = None) -> DNSProvider:
    """Pick a provider from credentials in the environment.

    Cloudflare is tried first, then AliDNS, then Route53.
    """
    env = _EnvView(os.environ if environ is None else environ)

    token = env.get("CLOUDFLARE_API_TOKEN")
    if token:
        return CloudflareProvider(token)

    ali_key_id = env.get("ALIDNS_ACCESS_KEY_ID")
    if ali_key_id:
        return AlidnsProvider(ali_key_id, env.get("ALIDNS_ACCESS_KEY_SECRET"))

    aws_key_id = env.get("AWS_ACCESS_KEY_ID")
    if aws_key_id:
        region = env.get("AWS_REGION") or _DEFAULT_AWS_REGION
        return Route53Provider(aws_key_id, env.get("AWS_SECRET_ACCESS_KEY"), region)

    raise DNSProviderError("no DNS provider credentials found in environment")