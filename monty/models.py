"""Data models for endpoint configuration and check results."""

from dataclasses import dataclass, field
from datetime import datetime

# Recognized check types, one checker each.
CHECK_TYPES = ("http", "tcp", "dns", "domain", "ssl")

# TLS protocol labels as reported in SSLStatus.tls_version.
TLS_VERSIONS = ("TLS 1.0", "TLS 1.1", "TLS 1.2", "TLS 1.3")

# Record types the DNS checker can resolve.
DNS_RECORD_TYPES = ("A", "AAAA", "CNAME", "MX", "NS", "TXT")


@dataclass(frozen=True)
class Endpoint:
    """A configured monitoring target.

    Instances are immutable: a probe always runs against the snapshot it was
    dispatched with, and updates produce a new instance.

    Attributes:
        id: Opaque unique identifier, never reused.
        url: Target address. Meaning depends on check_type.
        check_type: One of CHECK_TYPES.
        interval: Seconds between probes.
        timeout: Seconds before a probe is abandoned.
        created_at: Creation timestamp (UTC).
        expected_status_codes: HTTP codes whose status class counts as success
            (empty: any 2xx/3xx).
        max_response_time: HTTP latency ceiling in milliseconds.
        tcp_port: Port for TCP checks (overrides a port in the URL).
        dns_record_type: Record type resolved by DNS checks.
        expected_dns_answers: DNS values of which at least one must be returned.
        min_days_valid: SSL certificates expiring sooner are invalid.
        check_chain: Verify the SSL chain against trusted roots.
        check_domain_match: Verify the SSL certificate covers the hostname.
        acceptable_tls_versions: Negotiated TLS versions considered valid.
    """

    id: str
    url: str
    check_type: str
    interval: int
    timeout: int
    created_at: datetime
    expected_status_codes: tuple[int, ...] = ()
    max_response_time: int = 5000
    tcp_port: int | None = None
    dns_record_type: str = "A"
    expected_dns_answers: tuple[str, ...] = ()
    min_days_valid: int = 7
    check_chain: bool = True
    check_domain_match: bool = True
    acceptable_tls_versions: tuple[str, ...] = ("TLS 1.2", "TLS 1.3")


@dataclass(frozen=True)
class SSLStatus:
    """Latest certificate-health snapshot for an SSL endpoint.

    When the handshake itself fails only endpoint_id, error_message and
    checked_at carry information; everything else is empty and is_valid
    is False.
    """

    id: str
    endpoint_id: str
    is_valid: bool
    checked_at: datetime
    certificate_expires_at: datetime | None = None
    days_until_expiry: int = 0
    domain_matches: bool = False
    chain_valid: bool = False
    issuer: str | None = None
    subject: str | None = None
    tls_version: str | None = None
    serial_number: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class DomainStatus:
    """Latest registration snapshot for a domain endpoint."""

    id: str
    endpoint_id: str
    is_registered: bool
    checked_at: datetime
    domain_expires_at: datetime | None = None
    days_until_expiry: int | None = None
    registrar: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class CheckOutcome:
    """Result of a single probe execution.

    Attributes:
        endpoint_id: Endpoint the probe ran against.
        succeeded: Whether the target satisfied its check type's success predicate.
        latency_ms: Measured probe duration in milliseconds.
        error_message: Failure description; None iff succeeded.
        checked_at: Timestamp of probe start (UTC).
        status_code: HTTP status code, None for other check types or failed requests.
        error_kind: "timeout", "network", "certificate" or "assertion" when failed.
        ssl_status: Certificate snapshot produced by SSL checks.
        domain_status: Registration snapshot produced by domain checks.
    """

    endpoint_id: str
    succeeded: bool
    latency_ms: int
    error_message: str | None
    checked_at: datetime
    status_code: int | None = None
    error_kind: str | None = None
    ssl_status: SSLStatus | None = field(default=None, compare=False)
    domain_status: DomainStatus | None = field(default=None, compare=False)
