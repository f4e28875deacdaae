"""Probe implementations for each check type.

Every checker takes an Endpoint snapshot and returns a CheckOutcome. Network
failures and timeouts are reported as failed outcomes, never raised.
"""

import logging
import socket
import ssl
import time
import urllib.error
import urllib.request
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlparse

import dns.exception
import dns.resolver
import requests

from .config import DEFAULT_RDAP_BASE_URL
from .models import CheckOutcome, DomainStatus, Endpoint, SSLStatus
from .ssl_evaluator import CertificateParseError, TlsHandshake, decode_der_certificate, evaluate_handshake

logger = logging.getLogger(__name__)

USER_AGENT = "Monty/0.1"

ERROR_TIMEOUT = "timeout"
ERROR_NETWORK = "network"
ERROR_CERTIFICATE = "certificate"
ERROR_ASSERTION = "assertion"

# ssl.SSLSocket.version() values mapped to the labels used in configuration.
_TLS_VERSION_LABELS = {
    "TLSv1": "TLS 1.0",
    "TLSv1.1": "TLS 1.1",
    "TLSv1.2": "TLS 1.2",
    "TLSv1.3": "TLS 1.3",
}

_rdap_base_url = DEFAULT_RDAP_BASE_URL


class ProbeTimeoutError(Exception):
    """Raised when a probe exceeds the endpoint timeout."""

    pass


class ProbeNetworkError(Exception):
    """Raised when a probe fails at the network level (refused, unresolvable, reset)."""

    pass


class _NoRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Surface 3xx responses instead of following them.

    Returning None from redirect_request makes urllib raise HTTPError with
    the redirect status, which the HTTP checker evaluates like any other code.
    """

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        return None


_opener = urllib.request.build_opener(_NoRedirectHandler())


def set_rdap_base_url(base_url: str) -> None:
    """Set the RDAP service queried by domain checks."""
    global _rdap_base_url
    _rdap_base_url = base_url.rstrip("/")


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _failed(
    endpoint: Endpoint,
    checked_at: datetime,
    latency_ms: int,
    message: str,
    kind: str,
    **extra: Any,
) -> CheckOutcome:
    return CheckOutcome(
        endpoint_id=endpoint.id,
        succeeded=False,
        latency_ms=latency_ms,
        error_message=message,
        checked_at=checked_at,
        error_kind=kind,
        **extra,
    )


def _parse_target(url: str):
    """Parse url, accepting scheme-less "host", "host:port" and "host/path" forms."""
    if "://" not in url:
        url = "//" + url
    return urlparse(url)


def extract_host(url: str) -> str | None:
    """Get the bare hostname from a URL or host string (scheme, port and path stripped)."""
    return _parse_target(url.strip()).hostname


def parse_host_port(url: str) -> tuple[str, int]:
    """Get the TLS target of an SSL endpoint.

    The port is the explicit one in url, 80 for http:// URLs, else 443.

    Raises:
        ValueError: If url has no hostname or an invalid port.
    """
    parsed = _parse_target(url.strip())
    if not parsed.hostname:
        raise ValueError(f"No hostname in '{url}'")
    port = parsed.port
    if port is None:
        port = 80 if parsed.scheme == "http" else 443
    return parsed.hostname, port


# =============================================================================
# HTTP
# =============================================================================


def _is_successful(status_code: int, latency_ms: int, endpoint: Endpoint) -> bool:
    """Check a response against the endpoint's status and latency limits.

    Expected codes select status classes: listing 200 accepts any 2xx
    response. With no codes configured any 2xx or 3xx is accepted.
    """
    if endpoint.expected_status_codes:
        status_ok = status_code // 100 in {code // 100 for code in endpoint.expected_status_codes}
    else:
        status_ok = 200 <= status_code < 400
    return status_ok and latency_ms <= endpoint.max_response_time


def _http_get(url: str, timeout: int) -> tuple[int, str]:
    """Issue a GET without following redirects.

    Returns:
        Tuple of (status_code, reason) for any HTTP response, including 3xx-5xx.

    Raises:
        ProbeTimeoutError: If no response arrives within timeout.
        ProbeNetworkError: If the connection fails.
    """
    request = urllib.request.Request(url, method="GET", headers={"User-Agent": USER_AGENT})
    try:
        with _opener.open(request, timeout=timeout) as response:
            return response.status, getattr(response, "reason", "") or ""
    except urllib.error.HTTPError as e:
        # The error doubles as the response and holds the socket open.
        e.close()
        return e.code, str(e.reason or "")
    except urllib.error.URLError as e:
        if isinstance(e.reason, TimeoutError):
            raise ProbeTimeoutError(f"Request timeout after {timeout}s")
        raise ProbeNetworkError(str(e.reason) if e.reason else "Connection failed")
    except TimeoutError:
        raise ProbeTimeoutError(f"Request timeout after {timeout}s")
    except (OSError, ValueError) as e:
        raise ProbeNetworkError(str(e))


def check_http(endpoint: Endpoint) -> CheckOutcome:
    """Probe an HTTP(S) endpoint.

    Succeeds iff the response status falls in an expected class (any 2xx/3xx
    when no codes are configured) and the response arrived within max_response_time.
    """
    checked_at = datetime.now(UTC)
    start = time.monotonic()

    try:
        status_code, reason = _http_get(endpoint.url, endpoint.timeout)
    except ProbeTimeoutError as e:
        return _failed(endpoint, checked_at, _elapsed_ms(start), str(e), ERROR_TIMEOUT)
    except ProbeNetworkError as e:
        return _failed(endpoint, checked_at, _elapsed_ms(start), str(e), ERROR_NETWORK)

    latency_ms = _elapsed_ms(start)
    if _is_successful(status_code, latency_ms, endpoint):
        return CheckOutcome(
            endpoint_id=endpoint.id,
            succeeded=True,
            latency_ms=latency_ms,
            error_message=None,
            checked_at=checked_at,
            status_code=status_code,
        )

    if latency_ms > endpoint.max_response_time:
        message = f"Response time {latency_ms}ms exceeds {endpoint.max_response_time}ms"
    else:
        message = f"HTTP {status_code}: {reason}" if reason else f"HTTP {status_code}"
    return _failed(endpoint, checked_at, latency_ms, message, ERROR_ASSERTION, status_code=status_code)


# =============================================================================
# TCP
# =============================================================================


def _tcp_connect(host: str, port: int, timeout: int) -> None:
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
        sock.close()
    except TimeoutError:
        raise ProbeTimeoutError(f"Connection timeout after {timeout}s")
    except OSError as e:
        raise ProbeNetworkError(str(e))


def check_tcp(endpoint: Endpoint) -> CheckOutcome:
    """Probe a TCP port; succeeds iff the connection establishes within timeout."""
    checked_at = datetime.now(UTC)
    start = time.monotonic()

    parsed = _parse_target(endpoint.url.strip())
    try:
        port = endpoint.tcp_port or parsed.port
    except ValueError:
        return _failed(endpoint, checked_at, 0, f"Invalid port in '{endpoint.url}'", ERROR_ASSERTION)
    if not parsed.hostname:
        return _failed(endpoint, checked_at, 0, f"No host in '{endpoint.url}'", ERROR_ASSERTION)
    if port is None:
        return _failed(endpoint, checked_at, 0, "No TCP port configured", ERROR_ASSERTION)

    try:
        _tcp_connect(parsed.hostname, port, endpoint.timeout)
    except ProbeTimeoutError as e:
        return _failed(endpoint, checked_at, _elapsed_ms(start), str(e), ERROR_TIMEOUT)
    except ProbeNetworkError as e:
        return _failed(endpoint, checked_at, _elapsed_ms(start), str(e), ERROR_NETWORK)

    return CheckOutcome(
        endpoint_id=endpoint.id,
        succeeded=True,
        latency_ms=_elapsed_ms(start),
        error_message=None,
        checked_at=checked_at,
    )


# =============================================================================
# DNS
# =============================================================================


def _normalize_answer(value: str) -> str:
    return value.strip().strip('"').rstrip(".").lower()


def _rdata_to_text(rdata: Any, record_type: str) -> str:
    if record_type == "MX":
        return str(rdata.exchange)
    if record_type == "TXT":
        return b"".join(rdata.strings).decode("utf-8", errors="replace")
    return str(rdata)


def _resolve(host: str, record_type: str, timeout: int) -> set[str]:
    """Resolve host and return the normalized answer values.

    Raises:
        ProbeTimeoutError: If resolution does not finish within timeout.
        ProbeNetworkError: If the name does not exist or has no such record.
    """
    try:
        resolver = dns.resolver.Resolver()
        resolver.lifetime = timeout
        answers = resolver.resolve(host, record_type)
    except dns.resolver.NXDOMAIN:
        raise ProbeNetworkError(f"Domain {host} does not exist (NXDOMAIN)")
    except dns.resolver.NoAnswer:
        raise ProbeNetworkError(f"No {record_type} record for {host}")
    except dns.resolver.NoNameservers as e:
        raise ProbeNetworkError(f"No nameserver answered for {host}: {e}")
    except dns.exception.Timeout:
        raise ProbeTimeoutError(f"DNS resolution timeout after {timeout}s")
    except dns.exception.DNSException as e:
        raise ProbeNetworkError(f"DNS resolution failed: {e}")

    return {_normalize_answer(_rdata_to_text(rdata, record_type)) for rdata in answers}


def check_dns(endpoint: Endpoint) -> CheckOutcome:
    """Resolve the endpoint host for its configured record type.

    Succeeds iff resolution returns an answer and, when expected answers are
    configured, at least one of them is among the returned values.
    """
    checked_at = datetime.now(UTC)
    start = time.monotonic()

    host = extract_host(endpoint.url)
    if not host:
        return _failed(endpoint, checked_at, 0, f"No host in '{endpoint.url}'", ERROR_ASSERTION)

    try:
        answers = _resolve(host, endpoint.dns_record_type, endpoint.timeout)
    except ProbeTimeoutError as e:
        return _failed(endpoint, checked_at, _elapsed_ms(start), str(e), ERROR_TIMEOUT)
    except ProbeNetworkError as e:
        return _failed(endpoint, checked_at, _elapsed_ms(start), str(e), ERROR_NETWORK)

    latency_ms = _elapsed_ms(start)
    expected = {_normalize_answer(answer) for answer in endpoint.expected_dns_answers}
    if expected and not (answers & expected):
        message = f"Resolved {', '.join(sorted(answers))} but expected one of {', '.join(sorted(expected))}"
        return _failed(endpoint, checked_at, latency_ms, message, ERROR_ASSERTION)

    logger.debug("DNS %s (%s) -> %s", host, endpoint.dns_record_type, sorted(answers))
    return CheckOutcome(
        endpoint_id=endpoint.id,
        succeeded=True,
        latency_ms=latency_ms,
        error_message=None,
        checked_at=checked_at,
    )


# =============================================================================
# DOMAIN
# =============================================================================


def _fetch_rdap(domain: str, timeout: int) -> dict | None:
    """Fetch the RDAP domain record.

    Returns:
        Decoded record, or None if the registry has no such domain.

    Raises:
        ProbeTimeoutError: If the lookup exceeds timeout.
        ProbeNetworkError: If the lookup fails or returns an unusable response.
    """
    url = f"{_rdap_base_url}/domain/{domain}"
    try:
        response = requests.get(
            url,
            timeout=timeout,
            headers={"Accept": "application/rdap+json", "User-Agent": USER_AGENT},
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        record = response.json()
    except requests.Timeout:
        raise ProbeTimeoutError(f"Registration lookup timeout after {timeout}s")
    except requests.RequestException as e:
        raise ProbeNetworkError(f"Registration lookup failed: {e}")
    except ValueError:
        raise ProbeNetworkError("Registration lookup returned invalid JSON")

    if not isinstance(record, dict):
        raise ProbeNetworkError("Registration lookup returned an unexpected document")
    return record


def _parse_event_date(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _rdap_expiration(record: dict) -> datetime | None:
    for event in record.get("events") or []:
        if isinstance(event, dict) and event.get("eventAction") == "expiration" and event.get("eventDate"):
            return _parse_event_date(str(event["eventDate"]))
    return None


def _rdap_registrar(record: dict) -> str | None:
    for entity in record.get("entities") or []:
        if not isinstance(entity, dict) or "registrar" not in (entity.get("roles") or []):
            continue
        vcard = entity.get("vcardArray")
        if isinstance(vcard, list) and len(vcard) == 2 and isinstance(vcard[1], list):
            for prop in vcard[1]:
                if isinstance(prop, list) and len(prop) >= 4 and prop[0] == "fn":
                    return str(prop[3])
        return entity.get("handle")
    return None


def check_domain(endpoint: Endpoint) -> CheckOutcome:
    """Check domain registration through RDAP.

    Succeeds iff the registration record is retrievable and its expiration
    date, when published, is not in the past.
    """
    checked_at = datetime.now(UTC)
    start = time.monotonic()

    host = extract_host(endpoint.url)
    if not host:
        return _failed(endpoint, checked_at, 0, f"No host in '{endpoint.url}'", ERROR_ASSERTION)
    domain = host.removeprefix("www.")

    try:
        record = _fetch_rdap(domain, endpoint.timeout)
    except (ProbeTimeoutError, ProbeNetworkError) as e:
        kind = ERROR_TIMEOUT if isinstance(e, ProbeTimeoutError) else ERROR_NETWORK
        status = DomainStatus(
            id=str(uuid.uuid4()),
            endpoint_id=endpoint.id,
            is_registered=False,
            checked_at=checked_at,
            error_message=str(e),
        )
        return _failed(endpoint, checked_at, _elapsed_ms(start), str(e), kind, domain_status=status)

    latency_ms = _elapsed_ms(start)
    if record is None:
        message = f"Domain {domain} is not registered"
        status = DomainStatus(
            id=str(uuid.uuid4()),
            endpoint_id=endpoint.id,
            is_registered=False,
            checked_at=checked_at,
            error_message=message,
        )
        return _failed(endpoint, checked_at, latency_ms, message, ERROR_ASSERTION, domain_status=status)

    expires_at = _rdap_expiration(record)
    days_until_expiry = (expires_at - checked_at).days if expires_at else None
    expired = expires_at is not None and expires_at < checked_at
    message = f"Domain {domain} expired {-days_until_expiry} days ago" if expired else None

    status = DomainStatus(
        id=str(uuid.uuid4()),
        endpoint_id=endpoint.id,
        is_registered=True,
        checked_at=checked_at,
        domain_expires_at=expires_at,
        days_until_expiry=days_until_expiry,
        registrar=_rdap_registrar(record),
        error_message=message,
    )
    if expired:
        return _failed(endpoint, checked_at, latency_ms, message, ERROR_ASSERTION, domain_status=status)

    return CheckOutcome(
        endpoint_id=endpoint.id,
        succeeded=True,
        latency_ms=latency_ms,
        error_message=None,
        checked_at=checked_at,
        domain_status=status,
    )


# =============================================================================
# SSL
# =============================================================================


def _tls_version_label(version: str | None) -> str | None:
    if version is None:
        return None
    return _TLS_VERSION_LABELS.get(version, version)


def _handshake(host: str, port: int, timeout: int, verify: bool) -> TlsHandshake:
    context = ssl.create_default_context()
    # Hostname coverage is judged by the evaluator, not the handshake.
    context.check_hostname = False
    context.minimum_version = ssl.TLSVersion.MINIMUM_SUPPORTED
    if not verify:
        context.verify_mode = ssl.CERT_NONE

    with socket.create_connection((host, port), timeout=timeout) as sock:
        with context.wrap_socket(sock, server_hostname=host) as ssl_sock:
            version = _tls_version_label(ssl_sock.version())
            if verify:
                certificate = ssl_sock.getpeercert()
            else:
                certificate = decode_der_certificate(ssl_sock.getpeercert(binary_form=True))

    return TlsHandshake(hostname=host, tls_version=version, certificate=certificate)


def _perform_handshake(host: str, port: int, timeout: int) -> TlsHandshake:
    """Handshake with host:port and capture the peer certificate.

    When the chain does not verify, the handshake is repeated without
    verification so the certificate can still be evaluated; the verification
    failure is carried in chain_error.

    Raises:
        ProbeTimeoutError: If connecting or the handshake exceeds timeout.
        ProbeNetworkError: If the connection or handshake fails.
    """
    try:
        try:
            return _handshake(host, port, timeout, verify=True)
        except ssl.SSLCertVerificationError as e:
            chain_error = getattr(e, "verify_message", None) or str(e)
            handshake = _handshake(host, port, timeout, verify=False)
            return replace(handshake, chain_error=chain_error)
    except TimeoutError:
        raise ProbeTimeoutError(f"TLS handshake timeout after {timeout}s")
    except ssl.SSLError as e:
        raise ProbeNetworkError(f"TLS handshake failed: {e}")
    except socket.gaierror as e:
        raise ProbeNetworkError(f"DNS resolution failed: {e}")
    except OSError as e:
        raise ProbeNetworkError(f"Connection failed: {e}")


def check_ssl(endpoint: Endpoint) -> CheckOutcome:
    """Handshake with the endpoint and evaluate its certificate.

    The outcome succeeds iff the resulting SSLStatus is valid; the status is
    attached to the outcome for storage.
    """
    checked_at = datetime.now(UTC)
    start = time.monotonic()

    try:
        host, port = parse_host_port(endpoint.url)
        handshake = _perform_handshake(host, port, endpoint.timeout)
    except (ValueError, ProbeTimeoutError, ProbeNetworkError) as e:
        kind = ERROR_TIMEOUT if isinstance(e, ProbeTimeoutError) else ERROR_NETWORK
        status = SSLStatus(
            id=str(uuid.uuid4()),
            endpoint_id=endpoint.id,
            is_valid=False,
            checked_at=checked_at,
            error_message=str(e),
        )
        return _failed(endpoint, checked_at, _elapsed_ms(start), str(e), kind, ssl_status=status)
    except CertificateParseError as e:
        message = f"Malformed certificate: {e}"
        status = SSLStatus(
            id=str(uuid.uuid4()),
            endpoint_id=endpoint.id,
            is_valid=False,
            checked_at=checked_at,
            error_message=message,
        )
        return _failed(endpoint, checked_at, _elapsed_ms(start), message, ERROR_CERTIFICATE, ssl_status=status)

    latency_ms = _elapsed_ms(start)
    status = evaluate_handshake(handshake, endpoint, now=checked_at)

    if not status.is_valid:
        return _failed(
            endpoint,
            checked_at,
            latency_ms,
            status.error_message or "Certificate is not valid",
            ERROR_CERTIFICATE,
            ssl_status=status,
        )

    return CheckOutcome(
        endpoint_id=endpoint.id,
        succeeded=True,
        latency_ms=latency_ms,
        error_message=None,
        checked_at=checked_at,
        ssl_status=status,
    )


CHECKERS: dict[str, Callable[[Endpoint], CheckOutcome]] = {
    "http": check_http,
    "tcp": check_tcp,
    "dns": check_dns,
    "domain": check_domain,
    "ssl": check_ssl,
}


def check_endpoint(endpoint: Endpoint) -> CheckOutcome:
    """Run the checker matching the endpoint's check_type."""
    checker = CHECKERS.get(endpoint.check_type)
    if checker is None:
        return _failed(
            endpoint,
            datetime.now(UTC),
            0,
            f"Unsupported check type: {endpoint.check_type}",
            ERROR_ASSERTION,
        )
    return checker(endpoint)
