"""Endpoint store: validation, payload parsing and CRUD with change notification."""

import logging
import sqlite3
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from . import database
from .models import CHECK_TYPES, DNS_RECORD_TYPES, TLS_VERSIONS, Endpoint

logger = logging.getLogger(__name__)

DEFAULT_CHECK_TYPE = "http"
DEFAULT_TIMEOUT = 30

# Fields accepted in endpoint payloads; anything else is ignored.
INT_FIELDS = ("interval", "timeout", "max_response_time", "tcp_port", "min_days_valid")
BOOL_FIELDS = ("check_chain", "check_domain_match")
LIST_FIELDS = ("expected_status_codes", "expected_dns_answers", "acceptable_tls_versions")
STR_FIELDS = ("url", "check_type", "dns_record_type")

# Change events delivered to the on_change callback.
EVENT_CREATED = "created"
EVENT_UPDATED = "updated"
EVENT_DELETED = "deleted"

ChangeCallback = Callable[[str, Endpoint], None]


class ValidationError(Exception):
    """Raised when an endpoint configuration is rejected."""

    pass


class NotFoundError(Exception):
    """Raised when an endpoint id does not exist."""

    pass


def _to_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"'{name}' must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{name}' must be an integer, got {value!r}")


def _to_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "1", "yes", "on"):
        return True
    if isinstance(value, str) and value.lower() in ("false", "0", "no", "off", ""):
        return False
    raise ValidationError(f"'{name}' must be a boolean, got {value!r}")


def parse_endpoint_payload(data: Any) -> dict:
    """Normalize a decoded JSON body into an endpoint configuration dict.

    Only known fields are kept. Values are coerced to their field types;
    range checks happen later in validation.

    Args:
        data: Decoded JSON body.

    Returns:
        Configuration dict containing only the fields present in data.

    Raises:
        ValidationError: If the body is not an object or a value has the wrong shape.
    """
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")

    config: dict = {}
    for name in STR_FIELDS:
        if name in data and data[name] is not None:
            if not isinstance(data[name], str):
                raise ValidationError(f"'{name}' must be a string")
            config[name] = data[name].strip()

    for name in INT_FIELDS:
        if name in data:
            config[name] = None if data[name] is None else _to_int(name, data[name])

    for name in BOOL_FIELDS:
        if name in data and data[name] is not None:
            config[name] = _to_bool(name, data[name])

    for name in LIST_FIELDS:
        if name in data and data[name] is not None:
            value = data[name]
            if not isinstance(value, list):
                raise ValidationError(f"'{name}' must be a list")
            # Blank legacy form inputs arrive as null items.
            items = [item for item in value if item is not None]
            if name == "expected_status_codes":
                config[name] = tuple(_to_int(name, item) for item in items)
            else:
                config[name] = tuple(str(item).strip() for item in items if str(item).strip())

    return config


def _split_csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def parse_form_payload(fields: dict[str, list[str]]) -> dict:
    """Convert legacy form fields into an endpoint configuration dict.

    Args:
        fields: Parsed form body as returned by urllib.parse.parse_qs
            (keep_blank_values=True).

    Returns:
        Configuration dict in the same shape as parse_endpoint_payload.

    Raises:
        ValidationError: If a numeric field is not an integer.
    """
    data: dict = {}
    for name, values in fields.items():
        value = values[-1] if values else ""
        if name in LIST_FIELDS:
            data[name] = _split_csv(value)
        elif name in INT_FIELDS:
            if value.strip():
                data[name] = value.strip()
        elif name in STR_FIELDS:
            data[name] = value

    # Checkbox semantics: an unchecked box is simply absent from the form.
    for name in BOOL_FIELDS:
        data[name] = name in fields

    return parse_endpoint_payload(data)


def validate_endpoint(endpoint: Endpoint) -> None:
    """Check an endpoint configuration.

    Options belonging to other check types are shape-checked but otherwise
    ignored by the checkers.

    Raises:
        ValidationError: If any field is out of range.
    """
    if not endpoint.url:
        raise ValidationError("'url' must be provided")
    if endpoint.check_type not in CHECK_TYPES:
        raise ValidationError(f"'check_type' must be one of {', '.join(CHECK_TYPES)}, got '{endpoint.check_type}'")
    if endpoint.interval <= 0:
        raise ValidationError("'interval' must be greater than 0")
    if endpoint.timeout <= 0:
        raise ValidationError("'timeout' must be greater than 0")
    for code in endpoint.expected_status_codes:
        if not (100 <= code <= 599):
            raise ValidationError(f"Invalid HTTP status code: {code}")
    if endpoint.max_response_time <= 0:
        raise ValidationError("'max_response_time' must be greater than 0")
    if endpoint.tcp_port is not None and not (1 <= endpoint.tcp_port <= 65535):
        raise ValidationError(f"'tcp_port' must be between 1 and 65535, got {endpoint.tcp_port}")
    if endpoint.dns_record_type not in DNS_RECORD_TYPES:
        raise ValidationError(
            f"'dns_record_type' must be one of {', '.join(DNS_RECORD_TYPES)}, got '{endpoint.dns_record_type}'"
        )
    if endpoint.min_days_valid < 0:
        raise ValidationError("'min_days_valid' cannot be negative")
    for version in endpoint.acceptable_tls_versions:
        if version not in TLS_VERSIONS:
            raise ValidationError(f"Unknown TLS version: '{version}'")

    if endpoint.timeout >= endpoint.interval:
        logger.warning(
            "Endpoint %s: timeout (%ds) is not shorter than interval (%ds)",
            endpoint.url,
            endpoint.timeout,
            endpoint.interval,
        )


def _build_endpoint(config: dict, endpoint_id: str, created_at: datetime) -> Endpoint:
    if "interval" not in config or config["interval"] is None:
        raise ValidationError("'interval' must be provided")

    kwargs = {key: value for key, value in config.items() if value is not None or key == "tcp_port"}
    kwargs.setdefault("check_type", DEFAULT_CHECK_TYPE)
    kwargs.setdefault("timeout", DEFAULT_TIMEOUT)
    if "dns_record_type" in kwargs:
        kwargs["dns_record_type"] = kwargs["dns_record_type"].upper()
    if not kwargs.get("acceptable_tls_versions"):
        kwargs.pop("acceptable_tls_versions", None)
    kwargs["check_type"] = kwargs["check_type"].lower()

    return Endpoint(
        id=endpoint_id,
        url=str(kwargs.pop("url", "")).strip(),
        check_type=kwargs.pop("check_type"),
        interval=kwargs.pop("interval"),
        timeout=kwargs.pop("timeout"),
        created_at=created_at,
        **kwargs,
    )


def build_endpoint(config: dict) -> Endpoint:
    """Validate a configuration into a new, unsaved Endpoint.

    Raises:
        ValidationError: If the configuration is invalid.
    """
    endpoint = _build_endpoint(config, str(uuid.uuid4()), datetime.now(UTC))
    validate_endpoint(endpoint)
    return endpoint


class EndpointStore:
    """CRUD over endpoint configurations.

    Every successful mutation is reported to on_change synchronously, so a
    deleted endpoint is deregistered from the scheduler before its rows are
    removed and before delete() returns.
    """

    def __init__(self, db_conn: sqlite3.Connection, on_change: ChangeCallback | None = None) -> None:
        self._db_conn = db_conn
        self._on_change = on_change

    def _notify(self, event: str, endpoint: Endpoint) -> None:
        if self._on_change is not None:
            self._on_change(event, endpoint)

    def create(self, config: dict) -> Endpoint:
        """Validate and persist a new endpoint.

        Args:
            config: Configuration dict (see parse_endpoint_payload).

        Returns:
            The created Endpoint with a fresh id.

        Raises:
            ValidationError: If the configuration is invalid.
            DatabaseError: If the endpoint cannot be stored.
        """
        endpoint = build_endpoint(config)
        database.insert_endpoint(self._db_conn, endpoint)
        logger.info(
            "Created endpoint %s (%s %s, every %ds)",
            endpoint.id,
            endpoint.check_type,
            endpoint.url,
            endpoint.interval,
        )
        self._notify(EVENT_CREATED, endpoint)
        return endpoint

    def update(self, endpoint_id: str, config: dict) -> Endpoint:
        """Apply a full or partial configuration to an existing endpoint.

        Fields missing from config keep their stored value.

        Raises:
            NotFoundError: If the endpoint does not exist.
            ValidationError: If the resulting configuration is invalid.
        """
        current = self.get(endpoint_id)
        changes = {key: value for key, value in config.items() if value is not None or key == "tcp_port"}
        if "url" in changes:
            changes["url"] = str(changes["url"]).strip()
        if "check_type" in changes:
            changes["check_type"] = changes["check_type"].lower()
        if "dns_record_type" in changes:
            changes["dns_record_type"] = changes["dns_record_type"].upper()
        if "acceptable_tls_versions" in changes and not changes["acceptable_tls_versions"]:
            del changes["acceptable_tls_versions"]

        try:
            endpoint = replace(current, **changes)
        except TypeError as e:
            raise ValidationError(f"Invalid endpoint configuration: {e}")
        validate_endpoint(endpoint)

        if not database.update_endpoint(self._db_conn, endpoint):
            raise NotFoundError(f"Endpoint not found: {endpoint_id}")
        logger.info("Updated endpoint %s", endpoint_id)
        self._notify(EVENT_UPDATED, endpoint)
        return endpoint

    def delete(self, endpoint_id: str) -> None:
        """Deregister and delete an endpoint with its recorded results.

        Raises:
            NotFoundError: If the endpoint does not exist.
        """
        endpoint = self.get(endpoint_id)
        self._notify(EVENT_DELETED, endpoint)
        database.delete_endpoint(self._db_conn, endpoint_id)
        logger.info("Deleted endpoint %s", endpoint_id)

    def get(self, endpoint_id: str) -> Endpoint:
        """Get an endpoint by id.

        Raises:
            NotFoundError: If the endpoint does not exist.
        """
        endpoint = database.get_endpoint(self._db_conn, endpoint_id)
        if endpoint is None:
            raise NotFoundError(f"Endpoint not found: {endpoint_id}")
        return endpoint

    def seed(self, configs: list[dict]) -> list[Endpoint]:
        """Create the given endpoints if the store is empty.

        Args:
            configs: Raw endpoint payloads, as found in the YAML endpoints section.

        Returns:
            The created endpoints (empty if the store already had endpoints).

        Raises:
            ValidationError: If a seed entry is invalid.
        """
        if not configs or self.list():
            return []
        created = [self.create(parse_endpoint_payload(entry)) for entry in configs]
        logger.info("Seeded %d endpoint(s) from configuration", len(created))
        return created

    # Defined last: the method name shadows the builtin inside the class body.
    def list(self) -> list[Endpoint]:
        return database.list_endpoints(self._db_conn)
