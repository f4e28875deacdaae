"""Tests for the endpoint store module."""

import logging
import sqlite3
from pathlib import Path

import pytest

from monty.database import get_endpoint, get_history, init_db, insert_check
from monty.endpoints import (
    EVENT_CREATED,
    EVENT_DELETED,
    EVENT_UPDATED,
    EndpointStore,
    NotFoundError,
    ValidationError,
    build_endpoint,
    parse_endpoint_payload,
    parse_form_payload,
)
from monty.models import CheckOutcome, Endpoint


@pytest.fixture
def db_conn(tmp_path: Path) -> sqlite3.Connection:
    """Create a database connection with initialized tables."""
    conn = init_db(str(tmp_path / "test.db"))
    yield conn
    conn.close()


@pytest.fixture
def events() -> list[tuple[str, Endpoint]]:
    """Collect change notifications."""
    return []


@pytest.fixture
def store(db_conn: sqlite3.Connection, events: list) -> EndpointStore:
    """Endpoint store recording its notifications."""
    return EndpointStore(db_conn, on_change=lambda event, ep: events.append((event, ep)))


class TestParseEndpointPayload:
    """Tests for parse_endpoint_payload function."""

    def test_keeps_known_fields_only(self) -> None:
        """Unknown keys are dropped and strings trimmed."""
        config = parse_endpoint_payload({"url": "  https://example.com  ", "interval": 60, "color": "red"})

        assert config == {"url": "https://example.com", "interval": 60}

    def test_converts_lists_to_tuples(self) -> None:
        """List fields become tuples."""
        config = parse_endpoint_payload(
            {
                "expected_status_codes": [200, "201"],
                "acceptable_tls_versions": ["TLS 1.3"],
                "expected_dns_answers": ["93.184.216.34"],
            }
        )

        assert config["expected_status_codes"] == (200, 201)
        assert config["acceptable_tls_versions"] == ("TLS 1.3",)
        assert config["expected_dns_answers"] == ("93.184.216.34",)

    def test_drops_null_list_items(self) -> None:
        """null entries in list fields are ignored, not stored as text."""
        config = parse_endpoint_payload(
            {
                "url": "example.com",
                "check_type": "dns",
                "interval": 60,
                "expected_dns_answers": [None],
                "acceptable_tls_versions": [None, "TLS 1.3"],
                "expected_status_codes": [None, 200],
            }
        )

        assert config["expected_dns_answers"] == ()
        assert config["acceptable_tls_versions"] == ("TLS 1.3",)
        assert config["expected_status_codes"] == (200,)

    def test_rejects_non_object(self) -> None:
        """Body must be a JSON object."""
        with pytest.raises(ValidationError, match="JSON object"):
            parse_endpoint_payload([1, 2, 3])

    def test_rejects_non_integer_interval(self) -> None:
        """Numeric fields must be integers."""
        with pytest.raises(ValidationError, match="interval"):
            parse_endpoint_payload({"interval": "soon"})

    def test_rejects_boolean_as_integer(self) -> None:
        """true is not accepted as a number."""
        with pytest.raises(ValidationError, match="timeout"):
            parse_endpoint_payload({"timeout": True})

    def test_rejects_scalar_list_field(self) -> None:
        """List fields must be lists."""
        with pytest.raises(ValidationError, match="expected_status_codes"):
            parse_endpoint_payload({"expected_status_codes": "200"})


class TestParseFormPayload:
    """Tests for legacy form parsing."""

    def test_splits_comma_separated_lists(self) -> None:
        """Comma-separated list fields are split and trimmed."""
        config = parse_form_payload(
            {
                "url": ["https://example.com"],
                "interval": ["60"],
                "expected_status_codes": ["200, 301,"],
                "acceptable_tls_versions": ["TLS 1.2,TLS 1.3"],
            }
        )

        assert config["url"] == "https://example.com"
        assert config["interval"] == 60
        assert config["expected_status_codes"] == (200, 301)
        assert config["acceptable_tls_versions"] == ("TLS 1.2", "TLS 1.3")

    def test_checkbox_presence_sets_booleans(self) -> None:
        """A present checkbox is true, an absent one false."""
        config = parse_form_payload({"url": ["x"], "check_chain": ["on"]})

        assert config["check_chain"] is True
        assert config["check_domain_match"] is False

    def test_blank_numeric_field_is_omitted(self) -> None:
        """Empty numeric inputs fall back to defaults."""
        config = parse_form_payload({"url": ["x"], "interval": ["30"], "timeout": [""]})

        assert "timeout" not in config

    def test_rejects_non_numeric_value(self) -> None:
        """Non-numeric text in a numeric field is rejected."""
        with pytest.raises(ValidationError, match="tcp_port"):
            parse_form_payload({"url": ["x"], "tcp_port": ["http"]})


class TestBuildEndpoint:
    """Tests for validation and defaults."""

    def test_applies_defaults(self) -> None:
        """Missing optional fields take their defaults."""
        endpoint = build_endpoint({"url": "https://example.com", "interval": 60})

        assert endpoint.check_type == "http"
        assert endpoint.timeout == 30
        assert endpoint.expected_status_codes == ()
        assert endpoint.max_response_time == 5000
        assert endpoint.dns_record_type == "A"
        assert endpoint.min_days_valid == 7
        assert endpoint.check_chain is True
        assert endpoint.check_domain_match is True
        assert endpoint.acceptable_tls_versions == ("TLS 1.2", "TLS 1.3")
        assert endpoint.created_at.tzinfo is not None

    def test_assigns_unique_ids(self) -> None:
        """Each endpoint gets a fresh id."""
        config = {"url": "https://example.com", "interval": 60}
        assert build_endpoint(config).id != build_endpoint(config).id

    def test_normalizes_case(self) -> None:
        """check_type and dns_record_type are case-insensitive."""
        endpoint = build_endpoint({"url": "example.com", "interval": 60, "check_type": "DNS", "dns_record_type": "mx"})

        assert endpoint.check_type == "dns"
        assert endpoint.dns_record_type == "MX"

    @pytest.mark.parametrize(
        ("config", "message"),
        [
            ({"url": "", "interval": 60}, "url"),
            ({"url": "https://example.com"}, "interval"),
            ({"url": "https://example.com", "interval": 0}, "interval"),
            ({"url": "https://example.com", "interval": 60, "timeout": 0}, "timeout"),
            ({"url": "https://example.com", "interval": 60, "check_type": "ping"}, "check_type"),
            ({"url": "https://example.com", "interval": 60, "expected_status_codes": (600,)}, "status code"),
            ({"url": "https://example.com", "interval": 60, "max_response_time": 0}, "max_response_time"),
            ({"url": "example.com", "interval": 60, "tcp_port": 70000}, "tcp_port"),
            ({"url": "example.com", "interval": 60, "dns_record_type": "SRV"}, "dns_record_type"),
            ({"url": "example.com", "interval": 60, "min_days_valid": -1}, "min_days_valid"),
            ({"url": "example.com", "interval": 60, "acceptable_tls_versions": ("SSL 3.0",)}, "TLS version"),
        ],
    )
    def test_rejects_invalid_configuration(self, config: dict, message: str) -> None:
        """Invalid configurations raise ValidationError."""
        with pytest.raises(ValidationError, match=message):
            build_endpoint(config)

    def test_timeout_not_below_interval_only_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        """timeout >= interval is accepted with a warning."""
        with caplog.at_level(logging.WARNING, logger="monty.endpoints"):
            endpoint = build_endpoint({"url": "https://example.com", "interval": 10, "timeout": 30})

        assert endpoint.timeout == 30
        assert "not shorter than interval" in caplog.text

    def test_options_of_other_types_are_kept(self) -> None:
        """SSL options on an HTTP endpoint are accepted and stored."""
        endpoint = build_endpoint({"url": "https://example.com", "interval": 60, "min_days_valid": 30})

        assert endpoint.check_type == "http"
        assert endpoint.min_days_valid == 30


class TestEndpointStore:
    """Tests for EndpointStore CRUD operations."""

    def test_create_persists_and_notifies(self, store: EndpointStore, db_conn: sqlite3.Connection, events: list) -> None:
        """create stores the endpoint and reports it."""
        endpoint = store.create({"url": "https://example.com", "interval": 60})

        assert get_endpoint(db_conn, endpoint.id) == endpoint
        assert events == [(EVENT_CREATED, endpoint)]

    def test_create_invalid_does_not_notify(self, store: EndpointStore, events: list) -> None:
        """Rejected configurations never reach the listener."""
        with pytest.raises(ValidationError):
            store.create({"url": "   ", "interval": 60})

        assert events == []
        assert store.list() == []

    def test_get_unknown_raises(self, store: EndpointStore) -> None:
        """Unknown id raises NotFoundError."""
        with pytest.raises(NotFoundError):
            store.get("missing")

    def test_update_merges_partial_body(self, store: EndpointStore, events: list) -> None:
        """Fields missing from the update keep their stored value."""
        created = store.create({"url": "https://example.com", "interval": 60, "timeout": 5})

        updated = store.update(created.id, {"interval": 120})

        assert updated.interval == 120
        assert updated.timeout == 5
        assert updated.url == "https://example.com"
        assert updated.id == created.id
        assert updated.created_at == created.created_at
        assert store.get(created.id) == updated
        assert events[-1] == (EVENT_UPDATED, updated)

    def test_update_unknown_raises(self, store: EndpointStore) -> None:
        """Updating a missing endpoint raises NotFoundError."""
        with pytest.raises(NotFoundError):
            store.update("missing", {"interval": 60})

    def test_update_invalid_keeps_stored_value(self, store: EndpointStore) -> None:
        """A rejected update leaves the endpoint unchanged."""
        created = store.create({"url": "https://example.com", "interval": 60})

        with pytest.raises(ValidationError):
            store.update(created.id, {"interval": -5})

        assert store.get(created.id) == created

    def test_delete_notifies_before_removing_rows(self, db_conn: sqlite3.Connection) -> None:
        """The listener runs while the endpoint still exists."""
        seen_in_db: list[bool] = []

        def on_change(event: str, endpoint: Endpoint) -> None:
            if event == EVENT_DELETED:
                seen_in_db.append(get_endpoint(db_conn, endpoint.id) is not None)

        store = EndpointStore(db_conn, on_change=on_change)
        endpoint = store.create({"url": "https://example.com", "interval": 60})

        store.delete(endpoint.id)

        assert seen_in_db == [True]
        assert get_endpoint(db_conn, endpoint.id) is None

    def test_delete_removes_outcomes(self, store: EndpointStore, db_conn: sqlite3.Connection) -> None:
        """Recorded outcomes go away with the endpoint."""
        endpoint = store.create({"url": "https://example.com", "interval": 60})
        insert_check(
            db_conn,
            CheckOutcome(
                endpoint_id=endpoint.id,
                succeeded=True,
                latency_ms=10,
                error_message=None,
                checked_at=endpoint.created_at,
            ),
        )

        store.delete(endpoint.id)

        assert get_history(db_conn, endpoint.id) == []

    def test_delete_unknown_raises(self, store: EndpointStore, events: list) -> None:
        """Deleting a missing endpoint raises NotFoundError without notifying."""
        with pytest.raises(NotFoundError):
            store.delete("missing")
        assert events == []

    def test_list_returns_all(self, store: EndpointStore) -> None:
        """list returns every stored endpoint."""
        first = store.create({"url": "https://a.example.com", "interval": 60})
        second = store.create({"url": "b.example.com", "interval": 60, "check_type": "dns"})

        assert {ep.id for ep in store.list()} == {first.id, second.id}


class TestSeed:
    """Tests for seeding from configuration."""

    def test_seeds_empty_store(self, store: EndpointStore) -> None:
        """Configured endpoints are created when the store is empty."""
        created = store.seed([{"url": "http://localhost:3000/health", "interval": 10}])

        assert len(created) == 1
        assert store.list()[0].url == "http://localhost:3000/health"

    def test_does_not_seed_existing_store(self, store: EndpointStore) -> None:
        """A store with endpoints is left alone."""
        store.create({"url": "https://example.com", "interval": 60})

        assert store.seed([{"url": "http://localhost:3000/health", "interval": 10}]) == []
        assert len(store.list()) == 1

    def test_invalid_seed_raises(self, store: EndpointStore) -> None:
        """Seed entries are validated like API payloads."""
        with pytest.raises(ValidationError):
            store.seed([{"url": "http://localhost", "interval": 0}])
