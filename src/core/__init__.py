"""
Core infrastructure for the Mermaid ERD to Dataverse converter.

Shared components used by the deployment pipeline, the CLI and the request
handlers:

- Dataverse Web API client (DataverseConfig, DataverseClient, DataverseAPIError)
- Error classification for retries (ErrorClass, classify_error)
- Client caching per environment (ClientCache)
- Cancellation handling (CancellationToken, CancellationRegistry)
- Authentication helpers (TokenManager, CredentialFactory)
- Input validation and admission control (InputValidator, ValidationRateLimiter)
- Dataverse to ERD extraction (core.solution_extractor.SolutionExtractor)

Usage:
    from core import DataverseConfig, DataverseClient, DataverseAPIError
    from core import CancellationToken, InputValidator
    from core.deployment import DeploymentOrchestrator, RollbackEngine
    from core.platform.auth import TokenManager, CredentialFactory
"""

# Dataverse API client
from .dataverse_client import (
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

# Client cache
from .client_cache import ClientCache

# Cancellation handling
from .cancellation import (
    CancellationRegistry,
    CancellationToken,
    OperationCancelledException,
    restore_default_handler,
    setup_cancellation_handler,
)

# Authentication helpers
from .platform.auth import (
    AuthenticationError,
    CredentialFactory,
    TokenManager,
    dataverse_scope,
)

# Input validation and admission control
from .validators import (
    InputValidator,
    ValidationContext,
    ValidationRateLimiter,
)


__all__ = [
    # Dataverse API client
    "ConfigurationError",
    "DataverseAPIError",
    "DataverseClient",
    "DataverseConfig",
    "ErrorClass",
    "TransientAPIError",
    "classify_error",
    "is_guid",
    "load_config_file",
    # Client cache
    "ClientCache",
    # Cancellation
    "CancellationRegistry",
    "CancellationToken",
    "OperationCancelledException",
    "restore_default_handler",
    "setup_cancellation_handler",
    # Authentication
    "AuthenticationError",
    "CredentialFactory",
    "TokenManager",
    "dataverse_scope",
    # Validation
    "InputValidator",
    "ValidationContext",
    "ValidationRateLimiter",
]
