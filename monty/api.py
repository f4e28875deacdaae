"""HTTP API server for endpoint management and check results."""

import json
import logging
import sqlite3
import threading
from datetime import UTC, datetime
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any
from urllib.parse import parse_qs, urlparse

from .config import ApiConfig
from .database import (
    DatabaseError,
    get_history,
    get_latest_domain_status,
    get_latest_ssl_status,
    get_recent_checks,
    get_uptime,
    list_domain_statuses,
    list_ssl_statuses,
)
from .endpoints import EndpointStore, NotFoundError, ValidationError, parse_endpoint_payload, parse_form_payload
from .models import CheckOutcome, DomainStatus, Endpoint, SSLStatus

logger = logging.getLogger(__name__)

# Maximum number of outcome records returned per request.
HISTORY_LIMIT = 100

# Request bodies larger than this are rejected.
MAX_BODY_BYTES = 64 * 1024

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


class ApiError(Exception):
    """Raised when an API operation fails."""

    pass


class _BadRequest(Exception):
    """Raised while reading a request body that cannot be used."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code


def _format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _display_status(endpoint: Endpoint, uptime: float | None, db_conn: sqlite3.Connection) -> str:
    """Build the human-readable status column shown by the endpoints page."""
    if endpoint.check_type == "ssl":
        ssl_status = get_latest_ssl_status(db_conn, endpoint.id)
        if ssl_status is None:
            return "No SSL checks yet"
        return "Valid" if ssl_status.is_valid else "Invalid"

    if endpoint.check_type == "domain":
        domain_status = get_latest_domain_status(db_conn, endpoint.id)
        if domain_status is None:
            return "No domain checks yet"
        if not domain_status.is_registered:
            return "Not registered"
        if domain_status.days_until_expiry is None:
            return "Registered"
        return f"{domain_status.days_until_expiry} days"

    return f"{uptime:.1f}%" if uptime is not None else "N/A"


def _endpoint_to_dict(endpoint: Endpoint, db_conn: sqlite3.Connection) -> dict[str, Any]:
    """Convert an Endpoint to a JSON-serializable dictionary with its uptime."""
    uptime = get_uptime(db_conn, endpoint.id)
    return {
        "id": endpoint.id,
        "url": endpoint.url,
        "check_type": endpoint.check_type,
        "interval": endpoint.interval,
        "timeout": endpoint.timeout,
        "expected_status_codes": list(endpoint.expected_status_codes),
        "max_response_time": endpoint.max_response_time,
        "tcp_port": endpoint.tcp_port,
        "dns_record_type": endpoint.dns_record_type,
        "expected_dns_answers": list(endpoint.expected_dns_answers),
        "min_days_valid": endpoint.min_days_valid,
        "check_chain": endpoint.check_chain,
        "check_domain_match": endpoint.check_domain_match,
        "acceptable_tls_versions": list(endpoint.acceptable_tls_versions),
        "created_at": _format_timestamp(endpoint.created_at),
        "uptime": round(uptime, 2) if uptime is not None else None,
        "status": _display_status(endpoint, uptime, db_conn),
    }


def _outcome_to_dict(outcome: CheckOutcome) -> dict[str, Any]:
    return {
        "endpoint_id": outcome.endpoint_id,
        "is_up": outcome.succeeded,
        "code": outcome.status_code,
        "response_time": outcome.latency_ms,
        "error_message": outcome.error_message,
        "error_kind": outcome.error_kind,
        "checked_at": _format_timestamp(outcome.checked_at),
    }


def _ssl_status_to_dict(status: SSLStatus) -> dict[str, Any]:
    return {
        "id": status.id,
        "endpoint_id": status.endpoint_id,
        "certificate_expires_at": _format_timestamp(status.certificate_expires_at),
        "days_until_expiry": status.days_until_expiry,
        "is_valid": status.is_valid,
        "domain_matches": status.domain_matches,
        "chain_valid": status.chain_valid,
        "issuer": status.issuer,
        "subject": status.subject,
        "tls_version": status.tls_version,
        "serial_number": status.serial_number,
        "error_message": status.error_message,
        "checked_at": _format_timestamp(status.checked_at),
    }


def _domain_status_to_dict(status: DomainStatus) -> dict[str, Any]:
    return {
        "id": status.id,
        "endpoint_id": status.endpoint_id,
        "domain_expires_at": _format_timestamp(status.domain_expires_at),
        "days_until_expiry": status.days_until_expiry,
        "is_registered": status.is_registered,
        "registrar": status.registrar,
        "error_message": status.error_message,
        "checked_at": _format_timestamp(status.checked_at),
    }


class EndpointHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the endpoint management API."""

    # Class-level references set by factory
    store: EndpointStore | None = None
    db_conn: sqlite3.Connection | None = None

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("API %s - %s", self.address_string(), format % args)

    def _send_json(self, code: int, data: Any) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"error": message})

    def _path_parts(self) -> list[str]:
        """Split the request path (query string dropped) into segments."""
        path = urlparse(self.path).path
        return [part for part in path.split("/") if part]

    def _read_body(self) -> bytes:
        length_header = self.headers.get("Content-Length")
        try:
            length = int(length_header) if length_header else 0
        except ValueError:
            raise _BadRequest(400, "Invalid Content-Length header")
        if length > MAX_BODY_BYTES:
            raise _BadRequest(413, "Request body too large")
        return self.rfile.read(length) if length > 0 else b""

    def _read_json(self) -> Any:
        body = self._read_body()
        try:
            return json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise _BadRequest(400, "Invalid JSON body")

    def _read_endpoint_config(self, allow_form: bool = False) -> dict:
        """Parse the request body into an endpoint configuration dict.

        Raises:
            _BadRequest: If the body is malformed.
            ValidationError: If a field has the wrong shape.
        """
        content_type = self.headers.get("Content-Type", "").split(";")[0].strip().lower()
        if allow_form and content_type == FORM_CONTENT_TYPE:
            body = self._read_body()
            try:
                fields = parse_qs(body.decode("utf-8"), keep_blank_values=True)
            except UnicodeDecodeError:
                raise _BadRequest(400, "Invalid form body")
            return parse_form_payload(fields)
        return parse_endpoint_payload(self._read_json())

    def _dispatch(self, routes: dict[tuple, Any]) -> None:
        """Run the handler matching the request path.

        routes maps a path pattern (tuple of segments, "*" matching any
        single segment) to a callable receiving the wildcard segments.
        """
        parts = self._path_parts()
        try:
            for pattern, handler in routes.items():
                if len(pattern) != len(parts):
                    continue
                if all(p == "*" or p == part for p, part in zip(pattern, parts)):
                    args = [part for p, part in zip(pattern, parts) if p == "*"]
                    handler(*args)
                    return
            self._send_error_json(404, "Not found")
        except _BadRequest as e:
            self._send_error_json(e.code, str(e))
        except ValidationError as e:
            self._send_error_json(400, str(e))
        except NotFoundError as e:
            self._send_error_json(404, str(e))
        except DatabaseError as e:
            logger.error("Database error in %s %s: %s", self.command, self.path, e)
            self._send_error_json(500, "Internal server error")
        except Exception as e:
            logger.exception("Error handling %s request: %s", self.command, e)
            self._send_error_json(500, "Internal server error")

    def do_GET(self) -> None:
        """Handle GET requests."""
        self._dispatch(
            {
                ("health",): self._handle_health,
                ("api", "endpoints"): self._handle_list_endpoints,
                ("api", "endpoints", "*"): self._handle_get_endpoint,
                ("api", "endpoints", "*", "statuses"): self._handle_endpoint_statuses,
                ("api", "endpoints", "*", "ssl-statuses"): self._handle_endpoint_ssl_statuses,
                ("api", "endpoints", "*", "domain-statuses"): self._handle_endpoint_domain_statuses,
                ("api", "endpoint-urls"): self._handle_endpoint_urls,
                ("api", "statuses"): self._handle_statuses,
                ("api", "ssl-statuses"): self._handle_ssl_statuses,
                ("api", "domain-statuses"): self._handle_domain_statuses,
            }
        )

    def do_POST(self) -> None:
        """Handle POST requests."""
        self._dispatch(
            {
                ("api", "endpoints"): self._handle_create_endpoint,
                ("endpoints",): self._handle_legacy_create_endpoint,
            }
        )

    def do_PUT(self) -> None:
        """Handle PUT requests."""
        self._dispatch({("api", "endpoints", "*"): self._handle_update_endpoint})

    def do_DELETE(self) -> None:
        """Handle DELETE requests."""
        self._dispatch(
            {
                ("api", "endpoints", "*"): self._handle_delete_endpoint,
                ("endpoints", "*"): self._handle_delete_endpoint,
            }
        )

    def _handle_health(self) -> None:
        """Handle GET /health."""
        self._send_json(200, {"status": "ok"})

    def _handle_list_endpoints(self) -> None:
        """Handle GET /api/endpoints."""
        endpoints = self.store.list()
        self._send_json(200, [_endpoint_to_dict(ep, self.db_conn) for ep in endpoints])

    def _handle_get_endpoint(self, endpoint_id: str) -> None:
        """Handle GET /api/endpoints/<id>."""
        endpoint = self.store.get(endpoint_id)
        self._send_json(200, _endpoint_to_dict(endpoint, self.db_conn))

    def _handle_endpoint_urls(self) -> None:
        """Handle GET /api/endpoint-urls."""
        self._send_json(200, [ep.url for ep in self.store.list()])

    def _handle_statuses(self) -> None:
        """Handle GET /api/statuses - most recent outcomes across all endpoints."""
        checks = get_recent_checks(self.db_conn, HISTORY_LIMIT)
        self._send_json(200, [_outcome_to_dict(c) for c in checks])

    def _handle_endpoint_statuses(self, endpoint_id: str) -> None:
        """Handle GET /api/endpoints/<id>/statuses."""
        self.store.get(endpoint_id)
        checks = get_history(self.db_conn, endpoint_id, limit=HISTORY_LIMIT)
        self._send_json(200, [_outcome_to_dict(c) for c in checks])

    def _handle_endpoint_ssl_statuses(self, endpoint_id: str) -> None:
        """Handle GET /api/endpoints/<id>/ssl-statuses."""
        self.store.get(endpoint_id)
        status = get_latest_ssl_status(self.db_conn, endpoint_id)
        self._send_json(200, [_ssl_status_to_dict(status)] if status is not None else [])

    def _handle_endpoint_domain_statuses(self, endpoint_id: str) -> None:
        """Handle GET /api/endpoints/<id>/domain-statuses."""
        self.store.get(endpoint_id)
        status = get_latest_domain_status(self.db_conn, endpoint_id)
        self._send_json(200, [_domain_status_to_dict(status)] if status is not None else [])

    def _handle_ssl_statuses(self) -> None:
        """Handle GET /api/ssl-statuses."""
        statuses = list_ssl_statuses(self.db_conn)
        self._send_json(200, [_ssl_status_to_dict(s) for s in statuses])

    def _handle_domain_statuses(self) -> None:
        """Handle GET /api/domain-statuses."""
        statuses = list_domain_statuses(self.db_conn)
        self._send_json(200, [_domain_status_to_dict(s) for s in statuses])

    def _handle_create_endpoint(self) -> None:
        """Handle POST /api/endpoints."""
        endpoint = self.store.create(self._read_endpoint_config())
        self._send_json(201, _endpoint_to_dict(endpoint, self.db_conn))

    def _handle_legacy_create_endpoint(self) -> None:
        """Handle POST /endpoints (JSON or form-encoded body)."""
        endpoint = self.store.create(self._read_endpoint_config(allow_form=True))
        self._send_json(201, _endpoint_to_dict(endpoint, self.db_conn))

    def _handle_update_endpoint(self, endpoint_id: str) -> None:
        """Handle PUT /api/endpoints/<id>."""
        # Unknown ids are reported before the body is validated.
        self.store.get(endpoint_id)
        endpoint = self.store.update(endpoint_id, self._read_endpoint_config())
        self._send_json(200, _endpoint_to_dict(endpoint, self.db_conn))

    def _handle_delete_endpoint(self, endpoint_id: str) -> None:
        """Handle DELETE /api/endpoints/<id> and DELETE /endpoints/<id>."""
        self.store.delete(endpoint_id)
        self._send_json(200, {"message": "Endpoint deleted"})


def _create_handler_class(store: EndpointStore, db_conn: sqlite3.Connection) -> type:
    """Create a handler class with the store and database connection bound."""

    class BoundEndpointHandler(EndpointHandler):
        pass

    BoundEndpointHandler.store = store
    BoundEndpointHandler.db_conn = db_conn
    return BoundEndpointHandler


class ApiServer:
    """HTTP API server running in a background thread."""

    def __init__(
        self,
        config: ApiConfig,
        store: EndpointStore,
        db_conn: sqlite3.Connection,
    ) -> None:
        """Initialize the API server.

        Args:
            config: API configuration.
            store: Endpoint store used for configuration changes.
            db_conn: Database connection for querying results.
        """
        self.config = config
        self.store = store
        self.db_conn = db_conn
        self._server: HTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()

    @property
    def port(self) -> int:
        """Port the server is bound to (the configured one until started)."""
        if self._server is not None:
            return self._server.server_address[1]
        return self.config.port

    def start(self) -> None:
        """Start the API server in a background thread.

        Raises:
            ApiError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("API server is already running")
            return

        try:
            handler_class = _create_handler_class(self.store, self.db_conn)
            self._server = HTTPServer((self.config.host, self.config.port), handler_class)
            self._server.timeout = 1.0  # Allow periodic shutdown checks

            self._shutdown_event.clear()
            self._thread = threading.Thread(
                target=self._serve_forever,
                name="api-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("API server started on port %d", self.port)

        except OSError as e:
            if e.errno == 98 or e.errno == 48:  # EADDRINUSE (Linux=98, macOS=48)
                raise ApiError(
                    f"Port {self.config.port} is already in use. "
                    f"Another process may be using this port, or monty is already running."
                )
            elif e.errno == 13:  # EACCES - Permission denied
                raise ApiError(
                    f"Permission denied for port {self.config.port}. "
                    f"Ports below 1024 require root privileges. "
                    f"Use a port >= 1024 or run with elevated permissions."
                )
            else:
                raise ApiError(f"Failed to start API server on port {self.config.port}: {e}")

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()

    def stop(self) -> None:
        """Stop the API server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping API server...")
        self._shutdown_event.set()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        if self._server:
            self._server.server_close()

        self._server = None
        self._thread = None
        logger.info("API server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
