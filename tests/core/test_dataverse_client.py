"""
Dataverse Web API client tests.

Covers configuration loading, response handling, error classification,
transient retries and the metadata operations the deployment uses.
HTTP traffic is mocked at ``requests.request``.

Run specific test categories:
    pytest tests/core/test_dataverse_client.py
    pytest -k "Retry" tests/core/test_dataverse_client.py
"""

import json
from unittest.mock import Mock, patch
from typing import Any, Dict

import pytest
import requests

from core import (
    ConfigurationError,
    DataverseAPIError,
    DataverseClient,
    DataverseConfig,
    ErrorClass,
    TransientAPIError,
    classify_error,
    is_guid,
    load_config_file,
)
from constants import DeploymentDefaults
from core.dataverse_client import localized_label, odata_literal
from core.platform.auth import AuthenticationError


SERVER_URL = "https://contoso.crm.dynamics.com"
API_BASE_URL = f"{SERVER_URL}/api/data/v9.2"
SAMPLE_ENTITY_ID = "5b218778-e7a5-4d73-8187-f10824047715"


# =============================================================================
# Helpers
# =============================================================================

def create_mock_response(
    status_code: int,
    json_data: Dict[str, Any] = None,
    headers: Dict[str, str] = None,
    text: str = None,
) -> Mock:
    """Create a mock requests.Response object."""
    mock_response = Mock()
    mock_response.status_code = status_code
    mock_response.headers = headers or {}
    if text is None:
        text = json.dumps(json_data) if json_data is not None else ""
    mock_response.text = text

    if json_data is not None:
        mock_response.json.return_value = json_data
    else:
        mock_response.json.side_effect = json.JSONDecodeError("No JSON", "", 0)
    return mock_response


def error_response(status_code: int, code: str = "0x80048403", message: str = "Bad request") -> Mock:
    return create_mock_response(status_code, {"error": {"code": code, "message": message}})


@pytest.fixture
def client():
    token_manager = Mock()
    token_manager.get_access_token.return_value = "token"
    return DataverseClient(DataverseConfig(server_url=SERVER_URL), token_manager=token_manager)


# =============================================================================
# Configuration Tests
# =============================================================================

@pytest.mark.unit
class TestDataverseConfig:
    """Tests for DataverseConfig."""

    def test_api_base_url(self):
        """The Web API root includes the version segment."""
        config = DataverseConfig(server_url=f"{SERVER_URL}/")
        assert config.api_base_url == API_BASE_URL

    @pytest.mark.parametrize("url,expected", [
        ("https://contoso.crm.dynamics.com", "contoso"),
        ("https://Fabrikam.crm4.dynamics.com/", "fabrikam"),
        ("", "default"),
    ])
    def test_environment_suffix(self, url, expected):
        """History is grouped by the first host label."""
        assert DataverseConfig(server_url=url).environment_suffix == expected

    def test_from_dict_section(self, sample_config):
        """Settings are read from the dataverse section."""
        config = DataverseConfig.from_dict(sample_config)
        assert config.server_url == SERVER_URL
        assert config.client_id == "11111111-1111-1111-1111-111111111111"
        assert config.use_interactive_auth is False

    def test_environment_overrides(self, sample_config, monkeypatch):
        """Environment variables override the file."""
        monkeypatch.setenv("DATAVERSE_SERVER_URL", "https://override.crm.dynamics.com")
        monkeypatch.setenv("DATAVERSE_CLIENT_SECRET", "from-env")
        config = DataverseConfig.from_dict(sample_config)
        assert config.server_url == "https://override.crm.dynamics.com"
        assert config.client_secret == "from-env"

    def test_fingerprint_changes_with_settings(self):
        """Different settings produce different fingerprints."""
        a = DataverseConfig(server_url=SERVER_URL)
        b = DataverseConfig(server_url=SERVER_URL, client_secret="s")
        assert a.fingerprint() == DataverseConfig(server_url=SERVER_URL).fingerprint()
        assert a.fingerprint() != b.fingerprint()

    def test_from_file(self, temp_config_file):
        """Configuration loads from JSON files."""
        assert DataverseConfig.from_file(temp_config_file).server_url == SERVER_URL

    def test_load_config_missing(self, tmp_path):
        """Missing files raise FileNotFoundError."""
        with pytest.raises(FileNotFoundError, match="Configuration file not found"):
            load_config_file(str(tmp_path / "nope.json"))

    def test_load_config_invalid_json(self, tmp_path):
        """Malformed JSON raises ValueError."""
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ValueError, match="Invalid JSON"):
            load_config_file(str(path))

    def test_load_config_not_object(self, tmp_path):
        """A JSON array is not a configuration."""
        path = tmp_path / "list.json"
        path.write_text("[]", encoding="utf-8")
        with pytest.raises(ValueError, match="must contain a JSON object"):
            load_config_file(str(path))

    def test_load_config_empty_path(self):
        """An empty path is rejected."""
        with pytest.raises(ValueError):
            load_config_file("")


@pytest.mark.unit
class TestClientInit:
    """Tests for client construction."""

    def test_requires_config(self):
        with pytest.raises(ValueError):
            DataverseClient(None)

    def test_requires_config_type(self):
        with pytest.raises(TypeError):
            DataverseClient({"server_url": SERVER_URL})

    @pytest.mark.parametrize("url", ["", "http://contoso.crm.dynamics.com"])
    def test_rejects_bad_urls(self, url):
        """Empty and non-https URLs are configuration errors."""
        with pytest.raises(ConfigurationError):
            DataverseClient(DataverseConfig(server_url=url))


# =============================================================================
# Error Classification Tests
# =============================================================================

@pytest.mark.unit
class TestClassifyError:
    """Tests for classify_error."""

    @pytest.mark.parametrize("exception,expected", [
        (TransientAPIError(429), ErrorClass.RETRYABLE),
        (requests.exceptions.Timeout(), ErrorClass.RETRYABLE),
        (requests.exceptions.ConnectionError(), ErrorClass.RETRYABLE),
        (DataverseAPIError(502, "Unknown", "bad gateway"), ErrorClass.RETRYABLE),
        (DataverseAPIError(400, "0x80071151", "customization lock"), ErrorClass.RETRYABLE),
        (DataverseAPIError(400, "0x80048403", "invalid name"), ErrorClass.FATAL),
        (DataverseAPIError(404, "NotFound", "gone"), ErrorClass.FATAL),
        (ValueError("boom"), ErrorClass.FATAL),
    ])
    def test_classification(self, exception, expected):
        """Classification depends only on status and error code."""
        assert classify_error(exception) == expected

    def test_message_is_ignored(self):
        """A message that mentions throttling does not make an error retryable."""
        error = DataverseAPIError(400, "0x80048403", "please retry later, throttled")
        assert classify_error(error) == ErrorClass.FATAL

    @pytest.mark.parametrize("value,expected", [
        (SAMPLE_ENTITY_ID, True),
        ("Contoso", False),
        ("", False),
        (None, False),
    ])
    def test_is_guid(self, value, expected):
        assert is_guid(value) is expected


# =============================================================================
# Response Handling Tests
# =============================================================================

@pytest.mark.unit
class TestResponseHandling:
    """Tests for request and response handling."""

    @patch("requests.request")
    def test_headers_and_url(self, mock_request, client):
        """Requests carry the bearer token and OData headers."""
        mock_request.return_value = create_mock_response(200, {"UserId": "u"})
        assert client.who_am_i() == {"UserId": "u"}

        args, kwargs = mock_request.call_args
        assert args == ("GET", f"{API_BASE_URL}/WhoAmI")
        assert kwargs["headers"]["Authorization"] == "Bearer token"
        assert kwargs["headers"]["OData-Version"] == "4.0"
        assert kwargs["timeout"] == 30

    @patch("requests.request")
    def test_entity_id_header(self, mock_request, client):
        """Created record ids are read from OData-EntityId."""
        mock_request.return_value = create_mock_response(
            204, headers={"OData-EntityId": f"{API_BASE_URL}/publishers({SAMPLE_ENTITY_ID})"}
        )
        result = client.create_publisher("Contoso", "Contoso", "cr123")
        assert result["publisherid"] == SAMPLE_ENTITY_ID

    @patch("requests.request")
    def test_error_body_parsed(self, mock_request, client):
        """Error code and message come from the error body."""
        mock_request.return_value = error_response(400, "0x80048403", "Invalid schema name")
        with pytest.raises(DataverseAPIError) as exc_info:
            client.who_am_i()
        assert exc_info.value.status_code == 400
        assert exc_info.value.error_code == "0x80048403"
        assert exc_info.value.message == "Invalid schema name"

    @patch("requests.request")
    def test_error_without_json(self, mock_request, client):
        """Plain-text errors keep the text as message."""
        mock_request.return_value = create_mock_response(500, text="Internal failure")
        with patch("time.sleep"):
            with pytest.raises(DataverseAPIError) as exc_info:
                client.who_am_i()
        assert exc_info.value.error_code == "Unknown"
        assert exc_info.value.message == "Internal failure"

    @patch("requests.request")
    def test_invalid_json_success(self, mock_request, client):
        """A success response with a broken body is an error."""
        mock_request.return_value = create_mock_response(200, text="{oops")
        with pytest.raises(DataverseAPIError) as exc_info:
            client.who_am_i()
        assert exc_info.value.error_code == "InvalidResponse"

    @patch("time.sleep")
    @patch("requests.request")
    def test_timeout_converted(self, mock_request, mock_sleep, client):
        """Timeouts surface as transient 408 errors."""
        mock_request.side_effect = requests.exceptions.Timeout()
        with pytest.raises(TransientAPIError) as exc_info:
            client.who_am_i()
        assert exc_info.value.status_code == 408
        assert exc_info.value.error_code == "RequestTimeout"
        assert exc_info.value.retry_after is None

    @patch("time.sleep")
    @patch("requests.request")
    def test_connection_error_converted(self, mock_request, mock_sleep, client):
        """Connection failures surface as transient 503 errors."""
        mock_request.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(TransientAPIError) as exc_info:
            client.who_am_i()
        assert exc_info.value.status_code == 503
        assert exc_info.value.error_code == "ConnectionError"
        assert classify_error(exc_info.value) == ErrorClass.RETRYABLE

    def test_authentication_failure(self):
        """Credential failures surface as 401 errors."""
        token_manager = Mock()
        token_manager.get_access_token.side_effect = AuthenticationError("no credential")
        client = DataverseClient(DataverseConfig(server_url=SERVER_URL), token_manager=token_manager)
        with pytest.raises(DataverseAPIError) as exc_info:
            client.who_am_i()
        assert exc_info.value.status_code == 401
        assert exc_info.value.error_code == "AuthenticationFailed"


# =============================================================================
# Retry Tests
# =============================================================================

@pytest.mark.resilience
class TestTransientRetry:
    """Tests for the client's transient retry policy."""

    @patch("time.sleep")
    @patch("requests.request")
    def test_rate_limit_then_success(self, mock_request, mock_sleep, client):
        """429 responses are retried."""
        mock_request.side_effect = [
            create_mock_response(429, headers={"Retry-After": "1"}),
            create_mock_response(200, {"UserId": "u"}),
        ]
        assert client.who_am_i() == {"UserId": "u"}
        assert mock_request.call_count == 2

    @patch("time.sleep")
    @patch("requests.request")
    def test_retry_gives_up(self, mock_request, mock_sleep, client):
        """Persistent 503 responses raise after the attempt budget."""
        mock_request.return_value = create_mock_response(503)
        with pytest.raises(TransientAPIError) as exc_info:
            client.who_am_i()
        assert exc_info.value.status_code == 503
        assert exc_info.value.retry_after == 10
        assert mock_request.call_count == 5

    @patch("time.sleep")
    @patch("requests.request")
    def test_timeout_then_success(self, mock_request, mock_sleep, client):
        """A timed out request is retried and the next response used."""
        mock_request.side_effect = [
            requests.exceptions.Timeout(),
            create_mock_response(200, {"UserId": "u"}),
        ]
        assert client.who_am_i() == {"UserId": "u"}
        assert mock_request.call_count == 2

    @patch("time.sleep")
    @patch("requests.request")
    def test_retry_after_honoured_within_cap(self, mock_request, mock_sleep, client):
        """Retry-After sets the wait, capped at the maximum delay."""
        mock_request.side_effect = [
            create_mock_response(429, headers={"Retry-After": "7"}),
            create_mock_response(429, headers={"Retry-After": "600"}),
            create_mock_response(200, {"UserId": "u"}),
        ]
        assert client.who_am_i() == {"UserId": "u"}
        assert [c.args[0] for c in mock_sleep.call_args_list] == [7.0, DeploymentDefaults.MAX_DELAY_SECONDS]

    @patch("time.sleep")
    @patch("requests.request")
    def test_retry_after_http_date(self, mock_request, mock_sleep, client):
        """A Retry-After date falls back to the default hint."""
        mock_request.return_value = create_mock_response(429, headers={"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"})
        with pytest.raises(TransientAPIError) as exc_info:
            client.who_am_i()
        assert exc_info.value.retry_after == 30

    @patch("requests.request")
    def test_fatal_not_retried(self, mock_request, client):
        """Validation errors are raised on the first attempt."""
        mock_request.return_value = error_response(400)
        with pytest.raises(DataverseAPIError):
            client.who_am_i()
        assert mock_request.call_count == 1


# =============================================================================
# Metadata Operation Tests
# =============================================================================

@pytest.mark.unit
class TestPublishersAndSolutions:
    """Tests for ensure_publisher and ensure_solution."""

    @patch("requests.request")
    def test_existing_publisher(self, mock_request, client):
        """An existing publisher is returned without creating one."""
        publisher = {"publisherid": SAMPLE_ENTITY_ID, "uniquename": "Contoso", "customizationprefix": "cr123"}
        mock_request.return_value = create_mock_response(200, {"value": [publisher]})

        result = client.ensure_publisher("cr123", "Contoso")
        assert result["publisherid"] == SAMPLE_ENTITY_ID
        assert result["_created"] is False
        assert mock_request.call_count == 1

    @patch("requests.request")
    def test_publisher_found_by_prefix(self, mock_request, client):
        """Lookup falls back to the customization prefix."""
        publisher = {"publisherid": SAMPLE_ENTITY_ID, "uniquename": "Other", "customizationprefix": "cr123"}
        mock_request.side_effect = [
            create_mock_response(200, {"value": []}),
            create_mock_response(200, {"value": [publisher]}),
        ]
        assert client.ensure_publisher("cr123", "Contoso")["uniquename"] == "Other"
        assert "customizationprefix eq 'cr123'" in mock_request.call_args[0][1]

    @patch("requests.request")
    def test_publisher_created(self, mock_request, client):
        """A missing publisher is created with a derived unique name."""
        mock_request.side_effect = [
            create_mock_response(200, {"value": []}),
            create_mock_response(200, {"value": []}),
            create_mock_response(204, headers={"OData-EntityId": f"{API_BASE_URL}/publishers({SAMPLE_ENTITY_ID})"}),
        ]
        result = client.ensure_publisher("cr123", "Contoso Ltd")

        assert result["_created"] is True
        assert result["uniquename"] == "ContosoLtd"
        body = mock_request.call_args[1]["json"]
        assert body["customizationprefix"] == "cr123"
        assert 10000 <= body["customizationoptionvalueprefix"] <= 99999

    @patch("requests.request")
    def test_solution_created(self, mock_request, client):
        """Solutions bind to their publisher."""
        mock_request.side_effect = [
            create_mock_response(200, {"value": []}),
            create_mock_response(204, headers={"OData-EntityId": f"{API_BASE_URL}/solutions({SAMPLE_ENTITY_ID})"}),
        ]
        result = client.ensure_solution("ProjectSolution", "Project Solution", "pub-1")
        assert result == {
            "solutionid": SAMPLE_ENTITY_ID,
            "uniquename": "ProjectSolution",
            "friendlyname": "Project Solution",
            "_created": True,
        }
        assert mock_request.call_args[1]["json"]["publisherid@odata.bind"] == "/publishers(pub-1)"

    @patch("requests.request")
    def test_filter_values_escaped(self, mock_request, client):
        """Quotes inside filter values are doubled."""
        mock_request.return_value = create_mock_response(200, {"value": []})
        assert client.get_solution("O'Brien") is None
        assert mock_request.call_args[0][1].endswith("=uniquename eq 'O''Brien'")


@pytest.mark.unit
class TestTablesAndRelationships:
    """Tests for table, column and relationship operations."""

    @patch("requests.request")
    def test_get_entity_not_found(self, mock_request, client):
        """A 404 means the table does not exist."""
        mock_request.return_value = error_response(404, "0x80060888", "Not found")
        assert client.get_entity("cr123_project") is None
        assert client.entity_exists("cr123_project") is False

    @patch("requests.request")
    def test_create_entity_solution_header(self, mock_request, client):
        """Tables are created inside the solution."""
        mock_request.return_value = create_mock_response(204)
        client.create_entity({"SchemaName": "cr123_Project"}, "ProjectSolution")

        kwargs = mock_request.call_args[1]
        assert kwargs["headers"]["MSCRM.SolutionUniqueName"] == "ProjectSolution"
        assert kwargs["timeout"] == 120

    def test_build_attribute_batch(self, client):
        """Batch envelopes hold one request per column."""
        batch = client.build_attribute_batch("cr123_project", [{"SchemaName": "a"}, {"SchemaName": "b"}])
        assert [r["id"] for r in batch["requests"]] == ["1", "2"]
        assert batch["requests"][0]["url"] == "/EntityDefinitions(LogicalName='cr123_project')/Attributes"

    @patch("requests.request")
    def test_batch_inner_failure(self, mock_request, client):
        """A failed inner response fails the batch."""
        mock_request.return_value = create_mock_response(200, {"responses": [
            {"id": "1", "status": 204},
            {"id": "2", "status": 400, "body": {"error": {"code": "0x80048403", "message": "Duplicate"}}},
        ]})
        with pytest.raises(DataverseAPIError) as exc_info:
            client.execute_batch({"requests": [{}, {}]})
        assert exc_info.value.error_code == "0x80048403"
        assert exc_info.value.message == "1 batch request(s) failed: Duplicate"

    @patch("requests.request")
    def test_relationship_exists(self, mock_request, client):
        mock_request.return_value = create_mock_response(200, {"value": [{"SchemaName": "cr123_a_b"}]})
        assert client.relationship_exists("cr123_a_b") is True

    @patch("requests.request")
    def test_find_global_choice(self, mock_request, client):
        """Global choices are matched by name client-side."""
        mock_request.return_value = create_mock_response(200, {"value": [
            {"Name": "cr123_tier", "MetadataId": SAMPLE_ENTITY_ID},
        ]})
        assert client.find_global_choice("cr123_tier")["MetadataId"] == SAMPLE_ENTITY_ID
        assert client.find_global_choice("cr123_other") is None


@pytest.mark.unit
class TestDeletes:
    """Tests for delete operations."""

    @patch("requests.request")
    def test_delete_entity(self, mock_request, client):
        mock_request.return_value = create_mock_response(204)
        client.delete_entity("cr123_project")
        args, kwargs = mock_request.call_args
        assert args == ("DELETE", f"{API_BASE_URL}/EntityDefinitions(LogicalName='cr123_project')")
        assert kwargs["timeout"] == 300

    @patch("requests.request")
    def test_key_values_escaped(self, mock_request, client):
        """Quotes inside key segments are doubled."""
        mock_request.return_value = create_mock_response(204)
        client.delete_relationship("cr123_it's")
        assert mock_request.call_args[0][1] == f"{API_BASE_URL}/RelationshipDefinitions(SchemaName='cr123_it''s')"

    @pytest.mark.parametrize("value,expected", [
        ("cr123_project", "cr123_project"),
        ("O'Brien", "O''Brien"),
        ("''", "''''"),
    ])
    def test_odata_literal(self, value, expected):
        assert odata_literal(value) == expected

    @patch("requests.request")
    def test_delete_missing_global_choice(self, mock_request, client):
        """Deleting an unknown choice is a 404."""
        mock_request.return_value = create_mock_response(200, {"value": []})
        with pytest.raises(DataverseAPIError) as exc_info:
            client.delete_global_choice("cr123_tier")
        assert exc_info.value.status_code == 404

    @patch("requests.request")
    def test_delete_solution_by_name(self, mock_request, client):
        """Solutions named by unique name are resolved first."""
        mock_request.side_effect = [
            create_mock_response(200, {"value": [{"solutionid": SAMPLE_ENTITY_ID}]}),
            create_mock_response(204),
        ]
        client.delete_solution("ProjectSolution")
        assert mock_request.call_args[0] == ("DELETE", f"{API_BASE_URL}/solutions({SAMPLE_ENTITY_ID})")

    @patch("requests.request")
    def test_delete_publisher_by_id(self, mock_request, client):
        """Publisher ids are used directly."""
        mock_request.return_value = create_mock_response(204)
        client.delete_publisher(SAMPLE_ENTITY_ID)
        assert mock_request.call_count == 1
        assert mock_request.call_args[0][1].endswith(f"publishers({SAMPLE_ENTITY_ID})")


@pytest.mark.unit
class TestMetadataReads:
    """Tests for the metadata reads behind the solution extractor."""

    @pytest.mark.parametrize("label,expected", [
        (None, ""),
        ({"UserLocalizedLabel": {"Label": "Project"}}, "Project"),
        ({"UserLocalizedLabel": None, "LocalizedLabels": [{"Label": ""}, {"Label": "Projet"}]}, "Projet"),
        ({"UserLocalizedLabel": None, "LocalizedLabels": []}, ""),
    ])
    def test_localized_label(self, label, expected):
        assert localized_label(label) == expected

    @patch("requests.request")
    def test_list_solution_component_ids(self, mock_request, client):
        mock_request.return_value = create_mock_response(200, {"value": [
            {"objectid": "md-1"}, {"objectid": None}, {"objectid": "md-2"},
        ]})
        assert client.list_solution_component_ids(SAMPLE_ENTITY_ID) == ["md-1", "md-2"]
        url = mock_request.call_args[0][1]
        assert f"_solutionid_value eq {SAMPLE_ENTITY_ID}" in url
        assert url.endswith("componenttype eq 1")

    @patch("requests.request")
    def test_list_entity_definitions(self, mock_request, client):
        mock_request.return_value = create_mock_response(200, {"value": [{"LogicalName": "cr123_project"}]})
        assert client.list_entity_definitions() == [{"LogicalName": "cr123_project"}]
        assert mock_request.call_args[0][1].endswith("$filter=IsCustomEntity eq true")

        client.list_entity_definitions(custom_only=False)
        assert "$filter" not in mock_request.call_args[0][1]

    @patch("requests.request")
    def test_list_choice_options(self, mock_request, client):
        """Local and global option sets both yield labels."""
        mock_request.return_value = create_mock_response(200, {"value": [
            {"LogicalName": "cr123_status", "OptionSet": {"Options": [
                {"Label": {"UserLocalizedLabel": {"Label": "Active"}}},
                {"Label": {"UserLocalizedLabel": None, "LocalizedLabels": [{"Label": "Inactive"}]}},
            ]}},
            {"LogicalName": "cr123_tier", "OptionSet": None, "GlobalOptionSet": {"Options": [
                {"Label": {"UserLocalizedLabel": {"Label": "Gold"}}},
            ]}},
        ]})
        assert client.list_choice_options("cr123_project") == {
            "cr123_status": ["Active", "Inactive"],
            "cr123_tier": ["Gold"],
        }
        assert "PicklistAttributeMetadata" in mock_request.call_args[0][1]

    @patch("time.sleep")
    @patch("requests.request")
    def test_reads_retry_throttling(self, mock_request, mock_sleep, client):
        mock_request.side_effect = [
            create_mock_response(429, headers={"Retry-After": "1"}),
            create_mock_response(200, {"value": [{"uniquename": "ProjectSolution"}]}),
        ]
        assert client.list_solutions() == [{"uniquename": "ProjectSolution"}]
        assert mock_request.call_count == 2
