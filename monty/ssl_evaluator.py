"""Certificate health evaluation for completed TLS handshakes."""

import ipaddress
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from cryptography import x509
from cryptography.x509.oid import NameOID

from .models import Endpoint, SSLStatus

logger = logging.getLogger(__name__)

# Format used by ssl.SSLSocket.getpeercert() for notBefore/notAfter.
CERT_TIME_FORMAT = "%b %d %H:%M:%S %Y %Z"

# Attribute names as they appear in getpeercert() subject/issuer tuples.
_OID_NAMES = {
    NameOID.COMMON_NAME: "commonName",
    NameOID.ORGANIZATION_NAME: "organizationName",
    NameOID.ORGANIZATIONAL_UNIT_NAME: "organizationalUnitName",
    NameOID.COUNTRY_NAME: "countryName",
    NameOID.STATE_OR_PROVINCE_NAME: "stateOrProvinceName",
    NameOID.LOCALITY_NAME: "localityName",
}


class CertificateParseError(Exception):
    """Raised when certificate data is missing or malformed."""

    pass


@dataclass(frozen=True)
class TlsHandshake:
    """Facts gathered from one TLS handshake.

    Attributes:
        hostname: Hostname the client connected to.
        tls_version: Negotiated protocol label, e.g. "TLS 1.3".
        certificate: Peer certificate in the getpeercert() dict shape.
        chain_error: Verification failure message, or None if the chain
            verified against the trusted roots.
    """

    hostname: str
    tls_version: str | None
    certificate: dict[str, Any]
    chain_error: str | None = None


def _name_attributes(name: Any) -> dict[str, str]:
    """Flatten a getpeercert() name (tuple of RDN tuples) into a dict."""
    if not isinstance(name, tuple):
        raise CertificateParseError("Certificate name is not a sequence")
    attributes: dict[str, str] = {}
    for rdn in name:
        if not isinstance(rdn, tuple):
            raise CertificateParseError("Certificate name contains a malformed entry")
        for pair in rdn:
            if not (isinstance(pair, tuple) and len(pair) == 2):
                raise CertificateParseError("Certificate name contains a malformed attribute")
            attributes[str(pair[0])] = str(pair[1])
    return attributes


def _parse_expiry(certificate: dict[str, Any]) -> datetime:
    not_after = certificate.get("notAfter")
    if not not_after or not isinstance(not_after, str):
        raise CertificateParseError("Certificate missing expiration date")
    try:
        return datetime.strptime(not_after, CERT_TIME_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        raise CertificateParseError(f"Unparseable certificate expiration date: {not_after!r}")


def _hostname_matches(pattern: str, hostname: str) -> bool:
    """Match a certificate DNS name against a hostname.

    A wildcard is honored only as the entire left-most label and covers
    exactly one label.
    """
    pattern = pattern.lower().rstrip(".")
    hostname = hostname.lower().rstrip(".")
    if not pattern.startswith("*."):
        return pattern == hostname

    suffix = pattern[2:]
    if "*" in suffix:
        return False
    head, dot, rest = hostname.partition(".")
    return bool(head) and bool(dot) and rest == suffix


def _domain_matches(certificate: dict[str, Any], hostname: str, subject: dict[str, str]) -> bool:
    san = certificate.get("subjectAltName", ())
    if not isinstance(san, tuple):
        raise CertificateParseError("Certificate subjectAltName is malformed")

    try:
        host_ip = ipaddress.ip_address(hostname)
    except ValueError:
        host_ip = None

    dns_names: list[str] = []
    for entry in san:
        if not (isinstance(entry, tuple) and len(entry) == 2):
            raise CertificateParseError("Certificate subjectAltName entry is malformed")
        kind, value = entry
        if kind == "DNS":
            dns_names.append(str(value))
        elif kind == "IP Address" and host_ip is not None:
            try:
                if ipaddress.ip_address(str(value).strip()) == host_ip:
                    return True
            except ValueError:
                continue

    if host_ip is not None:
        return False

    # Subject CN is only consulted when no DNS SAN entry is present.
    if not dns_names and "commonName" in subject:
        dns_names.append(subject["commonName"])

    return any(_hostname_matches(name, hostname) for name in dns_names)


def evaluate_handshake(handshake: TlsHandshake, endpoint: Endpoint, now: datetime | None = None) -> SSLStatus:
    """Derive the certificate health of an SSL endpoint.

    Args:
        handshake: Result of the TLS handshake against the endpoint.
        endpoint: SSL endpoint configuration (thresholds and enabled checks).
        now: Evaluation time, defaults to the current UTC time.

    Returns:
        SSLStatus snapshot. Malformed certificate data yields is_valid=False
        with an explanatory error_message instead of raising.
    """
    checked_at = now or datetime.now(UTC)

    try:
        certificate = handshake.certificate
        if not certificate:
            raise CertificateParseError("No certificate returned by server")

        expires_at = _parse_expiry(certificate)
        subject_attrs = _name_attributes(certificate.get("subject", ()))
        issuer_attrs = _name_attributes(certificate.get("issuer", ()))

        days_until_expiry = (expires_at - checked_at).days
        is_valid = True
        problems: list[str] = []

        if days_until_expiry < 0:
            is_valid = False
            problems.append(f"Certificate expired {-days_until_expiry} days ago")
        elif days_until_expiry < endpoint.min_days_valid:
            is_valid = False
            problems.append(f"Certificate expires in {days_until_expiry} days (minimum {endpoint.min_days_valid})")

        chain_valid = True
        if endpoint.check_chain and handshake.chain_error is not None:
            chain_valid = False
            is_valid = False
            problems.append(f"Certificate chain invalid: {handshake.chain_error}")

        domain_matches = True
        if endpoint.check_domain_match and not _domain_matches(certificate, handshake.hostname, subject_attrs):
            domain_matches = False
            is_valid = False
            problems.append(f"Certificate does not cover {handshake.hostname}")

        if handshake.tls_version not in endpoint.acceptable_tls_versions:
            is_valid = False
            problems.append(f"TLS version {handshake.tls_version or 'unknown'} not acceptable")

    except CertificateParseError as e:
        logger.debug("Certificate parse error for %s: %s", handshake.hostname, e)
        return SSLStatus(
            id=str(uuid.uuid4()),
            endpoint_id=endpoint.id,
            is_valid=False,
            checked_at=checked_at,
            tls_version=handshake.tls_version,
            error_message=f"Malformed certificate: {e}",
        )

    serial = certificate.get("serialNumber")
    return SSLStatus(
        id=str(uuid.uuid4()),
        endpoint_id=endpoint.id,
        is_valid=is_valid,
        checked_at=checked_at,
        certificate_expires_at=expires_at,
        days_until_expiry=days_until_expiry,
        domain_matches=domain_matches,
        chain_valid=chain_valid,
        issuer=issuer_attrs.get("organizationName") or issuer_attrs.get("commonName"),
        subject=subject_attrs.get("commonName"),
        tls_version=handshake.tls_version,
        serial_number=str(serial) if serial is not None else None,
        error_message="; ".join(problems) if problems else None,
    )


def _x509_name_to_tuple(name: x509.Name) -> tuple:
    return tuple(
        tuple((_OID_NAMES.get(attr.oid, attr.oid.dotted_string), str(attr.value)) for attr in rdn)
        for rdn in name.rdns
    )


def decode_der_certificate(der: bytes) -> dict[str, Any]:
    """Decode a DER certificate into the getpeercert() dict shape.

    getpeercert() returns an empty dict when the chain was not verified,
    so certificates from unverified handshakes go through this decoder.

    Raises:
        CertificateParseError: If the data is not a valid certificate.
    """
    if not der:
        raise CertificateParseError("No certificate returned by server")
    try:
        cert = x509.load_der_x509_certificate(der)
        decoded: dict[str, Any] = {
            "subject": _x509_name_to_tuple(cert.subject),
            "issuer": _x509_name_to_tuple(cert.issuer),
            "notAfter": cert.not_valid_after_utc.strftime("%b %d %H:%M:%S %Y GMT"),
            "notBefore": cert.not_valid_before_utc.strftime("%b %d %H:%M:%S %Y GMT"),
            "serialNumber": format(cert.serial_number, "X"),
        }
    except ValueError as e:
        raise CertificateParseError(f"Invalid DER certificate: {e}")

    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return decoded
    except ValueError as e:
        raise CertificateParseError(f"Invalid subjectAltName extension: {e}")

    entries = [("DNS", name) for name in san.get_values_for_type(x509.DNSName)]
    entries += [("IP Address", str(ip)) for ip in san.get_values_for_type(x509.IPAddress)]
    decoded["subjectAltName"] = tuple(entries)
    return decoded
