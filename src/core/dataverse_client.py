"""
Dataverse Web API Client

This module provides functionality to interact with the Microsoft Dataverse
Web API for creating and deleting the metadata a deployment produces:
publishers, solutions, tables, columns, relationships and global choices.

Usage:
    from core.dataverse_client import DataverseConfig, DataverseClient

    config = DataverseConfig.from_file("config.json")
    client = DataverseClient(config)
    publisher = client.ensure_publisher("cr123", "Contoso")
"""

import json
import os
import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import requests
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
    before_sleep_log,
    RetryCallState,
)

from constants import APIConfig, DeploymentDefaults
from .platform.auth import AuthenticationError, CredentialFactory, TokenManager, dataverse_scope

logger = logging.getLogger(__name__)

GUID_PATTERN = re.compile(
    r'^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$'
)
ENTITY_ID_PATTERN = re.compile(r'\(([0-9a-fA-F-]{36})\)')

# Solution component types
COMPONENT_TYPE_ENTITY = 1
COMPONENT_TYPE_OPTION_SET = 9

ENTITY_READ_FIELDS = (
    "MetadataId,LogicalName,SchemaName,DisplayName,Description,"
    "PrimaryIdAttribute,PrimaryNameAttribute,IsCustomEntity"
)


class ConfigurationError(Exception):
    """Raised when connection settings are missing or invalid."""


class DataverseAPIError(Exception):
    """Exception raised for Dataverse Web API errors."""

    def __init__(self, status_code: int, error_code: str, message: str):
        self.status_code = status_code
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{error_code}] {message} (HTTP {status_code})")


class TransientAPIError(DataverseAPIError):
    """
    Transient failure retried by the client itself.

    Raised for 429 and 503 responses, request timeouts and dropped
    connections. ``retry_after`` is the server's Retry-After hint in
    seconds, or None when there is none.
    """

    def __init__(
        self,
        status_code: int,
        retry_after: Optional[int] = 5,
        message: str = "",
        error_code: str = "Transient",
    ):
        self.retry_after = retry_after
        super().__init__(status_code, error_code, message or f"Transient error (HTTP {status_code})")


class ErrorClass(str, Enum):
    """Outcome of classifying a failed remote operation."""
    RETRYABLE = "retryable"
    FATAL = "fatal"


def classify_error(exception: BaseException) -> ErrorClass:
    """
    Classify an exception by status code and structured error code.

    Messages are never inspected; only ``status_code`` and ``error_code``.
    """
    if isinstance(exception, TransientAPIError):
        return ErrorClass.RETRYABLE
    if isinstance(exception, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return ErrorClass.RETRYABLE
    if isinstance(exception, DataverseAPIError):
        if exception.status_code in APIConfig.RETRYABLE_STATUS_CODES:
            return ErrorClass.RETRYABLE
        code = (exception.error_code or "").lower()
        if code in {c.lower() for c in APIConfig.RETRYABLE_ERROR_CODES}:
            return ErrorClass.RETRYABLE
    return ErrorClass.FATAL


def _is_transient_error(exception: BaseException) -> bool:
    """Check if exception is a transient error that should be retried."""
    return isinstance(exception, TransientAPIError)


def parse_retry_after(value: Optional[str], default: int) -> int:
    """Seconds from a Retry-After header; HTTP-date values fall back to ``default``."""
    try:
        return max(0, int(value)) if value is not None else default
    except (TypeError, ValueError):
        return default


def odata_literal(value: str) -> str:
    """Escape a value for use inside a single-quoted OData string literal."""
    return str(value).replace("'", "''")


def localized_label(label: Optional[Dict[str, Any]]) -> str:
    """Text of a Dataverse ``Label`` object, or an empty string."""
    if not label:
        return ""
    user = label.get('UserLocalizedLabel') or {}
    if user.get('Label'):
        return user['Label']
    for localized in label.get('LocalizedLabels') or []:
        if localized.get('Label'):
            return localized['Label']
    return ""


def is_guid(value: Optional[str]) -> bool:
    return bool(value) and bool(GUID_PATTERN.match(value))


@dataclass
class DataverseConfig:
    """Configuration for Dataverse Web API access."""
    server_url: str
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    api_version: str = APIConfig.DEFAULT_API_VERSION
    use_interactive_auth: bool = False

    @property
    def api_base_url(self) -> str:
        return f"{self.server_url.rstrip('/')}/api/data/v{self.api_version}"

    @property
    def environment_suffix(self) -> str:
        """Host prefix used to group deployment history, e.g. ``contoso`` for contoso.crm.dynamics.com."""
        host = re.sub(r'^https?://', '', self.server_url).split('/')[0]
        return host.split('.')[0].lower() or "default"

    def fingerprint(self) -> str:
        """Identity of the settings that affect a client instance."""
        return "|".join([
            self.server_url, self.tenant_id or "", self.client_id or "",
            str(hash(self.client_secret or "")), self.api_version, str(self.use_interactive_auth),
        ])

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'DataverseConfig':
        """Create DataverseConfig from a dictionary, applying environment overrides."""
        section = config_dict.get('dataverse', config_dict)
        return cls(
            server_url=os.environ.get('DATAVERSE_SERVER_URL') or section.get('server_url', ''),
            tenant_id=section.get('tenant_id'),
            client_id=section.get('client_id'),
            client_secret=os.environ.get('DATAVERSE_CLIENT_SECRET') or section.get('client_secret'),
            api_version=str(section.get('api_version', APIConfig.DEFAULT_API_VERSION)),
            use_interactive_auth=bool(section.get('use_interactive_auth', False)),
        )

    @classmethod
    def from_file(cls, config_path: str) -> 'DataverseConfig':
        """Load configuration from a JSON file."""
        return cls.from_dict(load_config_file(config_path))


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Read a JSON configuration file into a dictionary."""
    if not config_path:
        raise ValueError("config_path cannot be empty")

    if not isinstance(config_path, str):
        raise TypeError(f"config_path must be string, got {type(config_path)}")

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config_dict = json.load(f)
    except FileNotFoundError:
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}. "
            f"Please create a config.json file with your Dataverse environment settings."
        )
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in configuration file {config_path}: {e}")
    except UnicodeDecodeError as e:
        raise ValueError(f"Encoding error reading {config_path}: {e}")

    if not isinstance(config_dict, dict):
        raise ValueError(f"Configuration file must contain a JSON object, got {type(config_dict)}")

    return config_dict


_exponential_wait = wait_exponential(
    multiplier=DeploymentDefaults.BASE_DELAY_SECONDS,
    max=DeploymentDefaults.MAX_DELAY_SECONDS,
)


def _wait_for_transient(retry_state: RetryCallState) -> float:
    """Honour Retry-After within the delay cap, else back off exponentially."""
    exception = retry_state.outcome.exception() if retry_state.outcome else None
    retry_after = getattr(exception, 'retry_after', None)
    if retry_after:
        return float(min(retry_after, DeploymentDefaults.MAX_DELAY_SECONDS))
    return _exponential_wait(retry_state)


# The one retry layer for transient failures; callers must not retry
# TransientAPIError again.
_retry_transient = retry(
    stop=stop_after_attempt(DeploymentDefaults.MAX_RETRIES),
    wait=_wait_for_transient,
    retry=retry_if_exception(_is_transient_error),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class DataverseClient:
    """
    Client for the Dataverse Web API metadata endpoints.

    This client handles authentication and provides methods for:
    - Publishers and solutions (ensure / delete)
    - Tables, columns and $batch column creation
    - One-to-many relationships
    - Global choices and solution components
    """

    def __init__(self, config: DataverseConfig, token_manager: Optional[TokenManager] = None):
        """
        Initialize the Dataverse client.

        Args:
            config: DataverseConfig instance with connection details
            token_manager: Optional pre-built token manager (tests inject one)
        """
        if not config:
            raise ValueError("config cannot be None")

        if not isinstance(config, DataverseConfig):
            raise TypeError(f"config must be DataverseConfig instance, got {type(config)}")

        if not config.server_url:
            raise ConfigurationError("server_url is required in configuration")

        if not re.match(r'^https://', config.server_url):
            raise ConfigurationError(f"server_url must use https: {config.server_url}")

        self.config = config
        self._token_manager = token_manager

    @property
    def base_url(self) -> str:
        return self.config.api_base_url

    def _get_token_manager(self) -> TokenManager:
        if self._token_manager is None:
            credential = CredentialFactory.create_credential(
                tenant_id=self.config.tenant_id,
                client_id=self.config.client_id,
                client_secret=self.config.client_secret,
                use_interactive_auth=self.config.use_interactive_auth,
            )
            self._token_manager = TokenManager(credential, dataverse_scope(self.config.server_url))
        return self._token_manager

    def _get_headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Get HTTP headers with authorization."""
        try:
            token = self._get_token_manager().get_access_token()
        except AuthenticationError as e:
            raise DataverseAPIError(status_code=401, error_code='AuthenticationFailed', message=e.message)
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json; charset=utf-8",
            "Accept": "application/json",
            "OData-MaxVersion": "4.0",
            "OData-Version": "4.0",
        }
        if extra:
            headers.update(extra)
        return headers

    def _make_request(
        self,
        method: str,
        path: str,
        operation_name: str,
        timeout: int = APIConfig.DEFAULT_TIMEOUT_SECONDS,
        **kwargs
    ) -> requests.Response:
        """
        Make HTTP request with consistent error handling.

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE)
            path: Path relative to the Web API root, or an absolute URL
            operation_name: Description of operation (for logging)
            timeout: Request timeout in seconds
            **kwargs: Additional arguments to pass to requests

        Raises:
            TransientAPIError: On timeouts and connection failures
            DataverseAPIError: On any other request failure
        """
        url = path if path.startswith('http') else f"{self.base_url}/{path.lstrip('/')}"
        if 'headers' not in kwargs:
            kwargs['headers'] = self._get_headers()
        try:
            logger.debug(f"{operation_name}: {method} {url}")
            return requests.request(method, url, timeout=timeout, **kwargs)

        except requests.exceptions.Timeout:
            logger.warning(f"{operation_name}: Request timeout after {timeout}s")
            raise TransientAPIError(
                408,
                retry_after=None,
                error_code='RequestTimeout',
                message=f'{operation_name} timed out after {timeout} seconds',
            )

        except requests.exceptions.ConnectionError as e:
            logger.warning(f"{operation_name}: Connection error: {e}")
            raise TransientAPIError(
                503,
                retry_after=None,
                error_code='ConnectionError',
                message=f'{operation_name} failed to connect to Dataverse: {e}',
            )

        except requests.exceptions.RequestException as e:
            logger.error(f"{operation_name}: Request error: {e}")
            raise DataverseAPIError(
                status_code=500,
                error_code='RequestError',
                message=f'{operation_name} request failed: {e}'
            )

    def _handle_response(self, response: requests.Response) -> Dict[str, Any]:
        """Handle API response and raise appropriate errors."""
        if response.status_code in (200, 201, 204):
            result: Dict[str, Any] = {}
            if response.text:
                try:
                    result = response.json()
                except json.JSONDecodeError as e:
                    logger.error(f"Failed to parse JSON response: {e}")
                    raise DataverseAPIError(
                        status_code=response.status_code,
                        error_code='InvalidResponse',
                        message=f'Server returned invalid JSON: {e}'
                    )
            entity_id_header = response.headers.get('OData-EntityId')
            if entity_id_header:
                match = ENTITY_ID_PATTERN.search(entity_id_header)
                if match:
                    result['_entityId'] = match.group(1)
            return result

        if response.status_code == 429:
            retry_after = parse_retry_after(response.headers.get('Retry-After'), 30)
            logger.warning(f"Rate limited (429). Retry after {retry_after}s")
            raise TransientAPIError(429, retry_after, "Rate limit exceeded")

        if response.status_code == 503:
            retry_after = parse_retry_after(response.headers.get('Retry-After'), 10)
            logger.warning(f"Service unavailable (503). Retry after {retry_after}s")
            raise TransientAPIError(503, retry_after, "Service temporarily unavailable")

        try:
            error_data = response.json().get('error', {})
            error_message = error_data.get('message', response.text)
            error_code = error_data.get('code', 'Unknown')
        except (json.JSONDecodeError, AttributeError):
            error_message = response.text
            error_code = 'Unknown'

        raise DataverseAPIError(
            status_code=response.status_code,
            error_code=error_code,
            message=error_message,
        )

    def _request(self, method: str, path: str, operation_name: str, **kwargs) -> Dict[str, Any]:
        return self._handle_response(self._make_request(method, path, operation_name, **kwargs))

    # =========================================================================
    # Identity
    # =========================================================================

    @_retry_transient
    def who_am_i(self) -> Dict[str, Any]:
        """Return the caller identity (UserId, BusinessUnitId, OrganizationId)."""
        return self._request('GET', 'WhoAmI', 'Who am I')

    # =========================================================================
    # Publishers
    # =========================================================================

    @_retry_transient
    def get_publisher_by_unique_name(self, unique_name: str) -> Optional[Dict[str, Any]]:
        result = self._request(
            'GET',
            f"publishers?$select=publisherid,uniquename,customizationprefix&$filter=uniquename eq '{odata_literal(unique_name)}'",
            f'Get publisher {unique_name}',
        )
        values = result.get('value', [])
        return values[0] if values else None

    @_retry_transient
    def get_publisher_by_prefix(self, prefix: str) -> Optional[Dict[str, Any]]:
        result = self._request(
            'GET',
            f"publishers?$select=publisherid,uniquename,customizationprefix&$filter=customizationprefix eq '{odata_literal(prefix)}'",
            f'Get publisher with prefix {prefix}',
        )
        values = result.get('value', [])
        return values[0] if values else None

    @_retry_transient
    def create_publisher(self, unique_name: str, friendly_name: str, prefix: str) -> Dict[str, Any]:
        body = {
            "uniquename": unique_name,
            "friendlyname": friendly_name,
            "customizationprefix": prefix,
            "customizationoptionvalueprefix": 10000 + (sum(ord(c) for c in prefix) % 89999),
        }
        logger.info(f"Creating publisher {unique_name} ({prefix})")
        result = self._request('POST', 'publishers', f'Create publisher {unique_name}', json=body)
        return {
            "publisherid": result.get('_entityId') or result.get('publisherid'),
            "uniquename": unique_name,
            "customizationprefix": prefix,
        }

    def ensure_publisher(self, prefix: str, friendly_name: str, unique_name: Optional[str] = None) -> Dict[str, Any]:
        """
        Return an existing publisher or create one.

        Lookup order: unique name, then customization prefix.
        """
        unique_name = unique_name or re.sub(r'[^A-Za-z0-9]', '', friendly_name) or prefix
        existing = self.get_publisher_by_unique_name(unique_name) or self.get_publisher_by_prefix(prefix)
        if existing:
            logger.info(f"Using existing publisher {existing.get('uniquename')}")
            existing.setdefault('_created', False)
            return existing
        created = self.create_publisher(unique_name, friendly_name, prefix)
        created['_created'] = True
        return created

    # =========================================================================
    # Solutions
    # =========================================================================

    @_retry_transient
    def get_solution(self, unique_name: str) -> Optional[Dict[str, Any]]:
        result = self._request(
            'GET',
            f"solutions?$select=solutionid,uniquename,friendlyname&$filter=uniquename eq '{odata_literal(unique_name)}'",
            f'Get solution {unique_name}',
        )
        values = result.get('value', [])
        return values[0] if values else None

    @_retry_transient
    def create_solution(
        self, unique_name: str, friendly_name: str, publisher_id: str, description: str = ""
    ) -> Dict[str, Any]:
        body = {
            "uniquename": unique_name,
            "friendlyname": friendly_name,
            "description": description,
            "version": "1.0.0.0",
            "publisherid@odata.bind": f"/publishers({publisher_id})",
        }
        logger.info(f"Creating solution {unique_name}")
        result = self._request('POST', 'solutions', f'Create solution {unique_name}', json=body)
        return {
            "solutionid": result.get('_entityId') or result.get('solutionid'),
            "uniquename": unique_name,
            "friendlyname": friendly_name,
        }

    def ensure_solution(
        self, unique_name: str, friendly_name: str, publisher_id: str, description: str = ""
    ) -> Dict[str, Any]:
        existing = self.get_solution(unique_name)
        if existing:
            logger.info(f"Using existing solution {unique_name}")
            existing.setdefault('_created', False)
            return existing
        created = self.create_solution(unique_name, friendly_name, publisher_id, description)
        created['_created'] = True
        return created

    @_retry_transient
    def add_solution_component(
        self,
        component_id: str,
        solution_unique_name: str,
        component_type: int = COMPONENT_TYPE_ENTITY,
        add_required_components: bool = False,
    ) -> Dict[str, Any]:
        body = {
            "ComponentId": component_id,
            "ComponentType": component_type,
            "SolutionUniqueName": solution_unique_name,
            "AddRequiredComponents": add_required_components,
            "DoNotIncludeSubcomponents": False,
        }
        return self._request('POST', 'AddSolutionComponent', f'Add component {component_id}', json=body)

    @_retry_transient
    def remove_solution_component(
        self, component_id: str, solution_unique_name: str, component_type: int = COMPONENT_TYPE_ENTITY
    ) -> Dict[str, Any]:
        body = {
            "SolutionComponent": {
                "@odata.type": "Microsoft.Dynamics.CRM.solutioncomponent",
                "solutioncomponentid": component_id,
            },
            "ComponentType": component_type,
            "SolutionUniqueName": solution_unique_name,
        }
        return self._request('POST', 'RemoveSolutionComponent', f'Remove component {component_id}', json=body)

    # =========================================================================
    # Tables and columns
    # =========================================================================

    @_retry_transient
    def get_entity(self, logical_name: str) -> Optional[Dict[str, Any]]:
        """Return ``{LogicalName, MetadataId}`` or None when the table does not exist."""
        try:
            return self._request(
                'GET',
                f"EntityDefinitions(LogicalName='{odata_literal(logical_name)}')?$select=LogicalName,MetadataId",
                f'Get entity {logical_name}',
            )
        except TransientAPIError:
            raise
        except DataverseAPIError as e:
            if e.status_code == 404:
                return None
            raise

    def entity_exists(self, logical_name: str) -> bool:
        return self.get_entity(logical_name) is not None

    @_retry_transient
    def create_entity(self, metadata: Dict[str, Any], solution_unique_name: Optional[str] = None) -> Dict[str, Any]:
        extra = {"MSCRM.SolutionUniqueName": solution_unique_name} if solution_unique_name else None
        logger.info(f"Creating entity {metadata.get('SchemaName')}")
        return self._request(
            'POST', 'EntityDefinitions', f"Create entity {metadata.get('SchemaName')}",
            timeout=APIConfig.ENTITY_TIMEOUT_SECONDS,
            json=metadata,
            headers=self._get_headers(extra),
        )

    @_retry_transient
    def create_attribute(self, entity_logical_name: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        return self._request(
            'POST', f"EntityDefinitions(LogicalName='{odata_literal(entity_logical_name)}')/Attributes",
            f"Create attribute {metadata.get('SchemaName')}",
            json=metadata,
        )

    def build_attribute_batch(self, entity_logical_name: str, attributes: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Build the JSON ``$batch`` envelope creating each attribute on one table."""
        return {
            "requests": [
                {
                    "id": str(index + 1),
                    "method": "POST",
                    "url": f"/EntityDefinitions(LogicalName='{odata_literal(entity_logical_name)}')/Attributes",
                    "body": metadata,
                    "headers": {"Content-Type": "application/json"},
                }
                for index, metadata in enumerate(attributes)
            ]
        }

    @_retry_transient
    def execute_batch(self, batch: Dict[str, Any]) -> Dict[str, Any]:
        """
        Post a JSON ``$batch`` envelope.

        Raises DataverseAPIError when any inner response failed.
        """
        result = self._request(
            'POST', '$batch', f"Batch of {len(batch.get('requests', []))} requests",
            timeout=APIConfig.ENTITY_TIMEOUT_SECONDS,
            json=batch,
        )
        failed = [r for r in result.get('responses', []) if int(r.get('status', 200)) >= 400]
        if failed:
            first = failed[0]
            error = (first.get('body') or {}).get('error', {})
            raise DataverseAPIError(
                status_code=int(first.get('status', 500)),
                error_code=error.get('code', 'BatchItemFailed'),
                message=f"{len(failed)} batch request(s) failed: {error.get('message', 'unknown error')}",
            )
        return result

    # =========================================================================
    # Relationships
    # =========================================================================

    @_retry_transient
    def relationship_exists(self, schema_name: str) -> bool:
        result = self._request(
            'GET',
            f"RelationshipDefinitions?$select=SchemaName&$filter=SchemaName eq '{odata_literal(schema_name)}'",
            f'Check relationship {schema_name}',
        )
        return bool(result.get('value'))

    @_retry_transient
    def create_relationship(self, metadata: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f"Creating relationship {metadata.get('SchemaName')}")
        return self._request(
            'POST', 'RelationshipDefinitions', f"Create relationship {metadata.get('SchemaName')}",
            timeout=APIConfig.ENTITY_TIMEOUT_SECONDS,
            json=metadata,
        )

    # =========================================================================
    # Global choices
    # =========================================================================

    @_retry_transient
    def list_global_choices(self) -> List[Dict[str, Any]]:
        # GlobalOptionSetDefinitions does not support $filter
        result = self._request('GET', 'GlobalOptionSetDefinitions?$select=MetadataId,Name', 'List global choices')
        return result.get('value', [])

    def find_global_choice(self, name: str) -> Optional[Dict[str, Any]]:
        for choice in self.list_global_choices():
            if choice.get('Name') == name:
                return choice
        return None

    @_retry_transient
    def create_global_choice(self, metadata: Dict[str, Any], solution_unique_name: Optional[str] = None) -> Dict[str, Any]:
        extra = {"MSCRM.SolutionUniqueName": solution_unique_name} if solution_unique_name else None
        logger.info(f"Creating global choice {metadata.get('Name')}")
        return self._request(
            'POST', 'GlobalOptionSetDefinitions', f"Create global choice {metadata.get('Name')}",
            json=metadata,
            headers=self._get_headers(extra),
        )

    # =========================================================================
    # Metadata reads
    # =========================================================================

    @_retry_transient
    def list_solutions(self) -> List[Dict[str, Any]]:
        """Visible solutions with version and publisher prefix."""
        result = self._request(
            'GET',
            "solutions?$select=solutionid,uniquename,friendlyname,version,ismanaged"
            "&$filter=isvisible eq true&$expand=publisherid($select=uniquename,customizationprefix)",
            'List solutions',
        )
        return result.get('value', [])

    @_retry_transient
    def list_solution_component_ids(self, solution_id: str, component_type: int = COMPONENT_TYPE_ENTITY) -> List[str]:
        """Object ids of one component type inside a solution."""
        result = self._request(
            'GET',
            f"solutioncomponents?$select=objectid"
            f"&$filter=_solutionid_value eq {solution_id} and componenttype eq {component_type}",
            f'List components of solution {solution_id}',
        )
        return [c['objectid'] for c in result.get('value', []) if c.get('objectid')]

    @_retry_transient
    def list_entity_definitions(self, custom_only: bool = True) -> List[Dict[str, Any]]:
        query = f"EntityDefinitions?$select={ENTITY_READ_FIELDS}"
        if custom_only:
            query += "&$filter=IsCustomEntity eq true"
        return self._request('GET', query, 'List entity definitions').get('value', [])

    @_retry_transient
    def get_entity_definition(self, metadata_id: str) -> Dict[str, Any]:
        return self._request(
            'GET', f"EntityDefinitions({metadata_id})?$select={ENTITY_READ_FIELDS}",
            f'Get entity definition {metadata_id}',
        )

    @_retry_transient
    def list_attributes(self, logical_name: str) -> List[Dict[str, Any]]:
        result = self._request(
            'GET',
            f"EntityDefinitions(LogicalName='{odata_literal(logical_name)}')/Attributes"
            "?$select=LogicalName,SchemaName,AttributeType,AttributeOf,IsPrimaryId,IsPrimaryName,"
            "IsCustomAttribute,RequiredLevel,Description",
            f'List attributes of {logical_name}',
        )
        return result.get('value', [])

    @_retry_transient
    def list_choice_options(self, logical_name: str) -> Dict[str, List[str]]:
        """Option labels of each local choice column on a table."""
        result = self._request(
            'GET',
            f"EntityDefinitions(LogicalName='{odata_literal(logical_name)}')/Attributes"
            "/Microsoft.Dynamics.CRM.PicklistAttributeMetadata?$select=LogicalName"
            "&$expand=OptionSet($select=Options),GlobalOptionSet($select=Options)",
            f'List choice options of {logical_name}',
        )
        choices: Dict[str, List[str]] = {}
        for attribute in result.get('value', []):
            option_set = attribute.get('OptionSet') or attribute.get('GlobalOptionSet') or {}
            choices[attribute['LogicalName']] = [
                label for label in (localized_label(o.get('Label')) for o in option_set.get('Options', [])) if label
            ]
        return choices

    @_retry_transient
    def list_one_to_many_relationships(self, logical_name: str) -> List[Dict[str, Any]]:
        """Relationships where the table is the referenced (one) side."""
        result = self._request(
            'GET',
            f"EntityDefinitions(LogicalName='{odata_literal(logical_name)}')/OneToManyRelationships"
            "?$select=SchemaName,ReferencedEntity,ReferencingEntity,ReferencingAttribute",
            f'List relationships of {logical_name}',
        )
        return result.get('value', [])

    # =========================================================================
    # Deletes
    # =========================================================================

    @_retry_transient
    def delete_relationship(self, schema_name: str) -> None:
        self._request(
            'DELETE', f"RelationshipDefinitions(SchemaName='{odata_literal(schema_name)}')",
            f'Delete relationship {schema_name}',
        )

    @_retry_transient
    def delete_entity(self, logical_name: str) -> None:
        self._request(
            'DELETE', f"EntityDefinitions(LogicalName='{odata_literal(logical_name)}')",
            f'Delete entity {logical_name}',
            timeout=APIConfig.DELETE_ENTITY_TIMEOUT_SECONDS,
        )

    def delete_global_choice(self, name: str) -> None:
        choice = self.find_global_choice(name)
        if choice is None:
            raise DataverseAPIError(404, 'NotFound', f"Global choice '{name}' not found")
        self._delete_by_id('GlobalOptionSetDefinitions', choice['MetadataId'], f'Delete global choice {name}')

    def delete_solution(self, solution_id_or_name: str) -> None:
        solution_id = solution_id_or_name
        if not is_guid(solution_id_or_name):
            solution = self.get_solution(solution_id_or_name)
            if solution is None:
                raise DataverseAPIError(404, 'NotFound', f"Solution '{solution_id_or_name}' not found")
            solution_id = solution['solutionid']
        self._delete_by_id('solutions', solution_id, f'Delete solution {solution_id_or_name}')

    def delete_publisher(self, publisher_id_or_prefix: str) -> None:
        publisher_id = publisher_id_or_prefix
        if not is_guid(publisher_id_or_prefix):
            publisher = self.get_publisher_by_prefix(publisher_id_or_prefix)
            if publisher is None:
                raise DataverseAPIError(404, 'NotFound', f"Publisher '{publisher_id_or_prefix}' not found")
            publisher_id = publisher['publisherid']
        self._delete_by_id('publishers', publisher_id, f'Delete publisher {publisher_id_or_prefix}')

    @_retry_transient
    def _delete_by_id(self, collection: str, record_id: str, operation_name: str) -> None:
        self._request('DELETE', f"{collection}({record_id})", operation_name)
