from unittest.mock import MagicMock, patch

import pytest
import requests

from scan_lifecycle.core.errors import SchemaCacheError, StorageError
from scan_lifecycle.core.schema_cache import (
    MAX_BACKOFF_MS,
    SchemaCacheRefresher,
    calculate_backoff_delay,
    classify_database_error,
    is_schema_cache_error,
    refresh_schema_cache,
)


@pytest.mark.parametrize(
    "error",
    [
        {"code": "PGRST204", "message": "anything"},
        {"code": "pgrst204"},
        {"message": "Column 'heartbeat_at' does not exist in the schema cache"},
        {"message": "column scans.progress_message does not exist in the schema cache"},
        SchemaCacheError("stale", code="PGRST204"),
        Exception("Could not find: column foo does not exist in the schema cache"),
    ],
)
def test_schema_cache_signature_is_recognised(error):
    assert is_schema_cache_error(error) is True


@pytest.mark.parametrize(
    "error",
    [
        None,
        {"code": "23505", "message": "duplicate key value violates unique constraint"},
        {"message": "relation scans does not exist"},
        {"message": "column does not exist"},
        StorageError("connection refused"),
    ],
)
def test_other_errors_are_not_schema_cache(error):
    assert is_schema_cache_error(error) is False


def test_classify_database_error():
    assert classify_database_error({"code": "PGRST204"})["type"] == "schema_cache"
    assert classify_database_error({"code": "42501", "message": "nope"})["type"] == "permission"
    assert classify_database_error({"code": "23505", "message": "dup"})["type"] == "validation"
    assert classify_database_error(StorageError("connection timed out"))["retryable"] is True
    assert classify_database_error({"message": "???"})["type"] == "unknown"
    assert classify_database_error(None)["recoverable"] is False


def test_backoff_doubles_caps_and_jitters():
    with patch("scan_lifecycle.core.schema_cache.random.random", return_value=0.0):
        assert calculate_backoff_delay(0, 1000) == 1000
        assert calculate_backoff_delay(1, 1000) == 2000
        assert calculate_backoff_delay(2, 1000) == 4000
        assert calculate_backoff_delay(10, 1000) == MAX_BACKOFF_MS

    with patch("scan_lifecycle.core.schema_cache.random.random", return_value=0.999):
        delay = calculate_backoff_delay(0, 1000)
    assert 1000 <= delay <= 1300


def _response(status_code):
    response = MagicMock()
    response.status_code = status_code
    return response


def test_refresh_without_gateway_reports_failure():
    result = SchemaCacheRefresher(None).refresh()
    assert result["success"] is False
    assert result["method"] == "none"
    assert "error" in result


def test_refresh_via_admin_endpoint():
    session = MagicMock()
    session.post.return_value = _response(200)

    refresher = SchemaCacheRefresher("https://db.example.com/", "service-key", session=session)
    result = refresher()

    assert result == {"success": True, "method": "postgrest_admin"}
    url = session.post.call_args[0][0]
    headers = session.post.call_args[1]["headers"]
    assert url == "https://db.example.com/rest/v1/"
    assert headers["Authorization"] == "Bearer service-key"
    assert headers["apikey"] == "service-key"


def test_refresh_falls_back_to_rpc():
    session = MagicMock()
    session.post.side_effect = [_response(404), _response(204)]

    refresher = SchemaCacheRefresher(
        "https://db.example.com", "key", reload_rpc="reload_schema_cache", session=session
    )
    result = refresher.refresh()

    assert result == {"success": True, "method": "supabase_rpc"}
    assert session.post.call_args_list[1][0][0] == "https://db.example.com/rest/v1/rpc/reload_schema_cache"


def test_refresh_never_raises_on_network_error():
    session = MagicMock()
    session.post.side_effect = requests.ConnectionError("unreachable")

    result = SchemaCacheRefresher("https://db.example.com", "key", session=session).refresh()

    assert result["success"] is False
    assert "unreachable" in result["error"]


def test_refresh_schema_cache_helper_without_gateway():
    assert refresh_schema_cache(None)["success"] is False
