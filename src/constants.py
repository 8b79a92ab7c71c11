"""
Centralized configuration constants for the Mermaid ERD to Dataverse converter.

This module provides a single source of truth for all configuration constants,
default values, and limits used throughout the application.
"""

from enum import IntEnum
from typing import Final

# ============================================================================
# Exit Codes
# ============================================================================

class ExitCode(IntEnum):
    """Standard exit codes for CLI commands.

    Following Unix conventions:
    - 0: Success
    - 1: General error
    - 2: Validation/syntax error
    - 3+: Specific error categories
    """
    SUCCESS = 0
    ERROR = 1
    VALIDATION_ERROR = 2
    CONFIG_ERROR = 3
    API_ERROR = 4
    FILE_NOT_FOUND = 5
    PERMISSION_DENIED = 6
    CANCELLED = 7
    TIMEOUT = 8


# ============================================================================
# Dataverse API Configuration
# ============================================================================

class APIConfig:
    """Dataverse Web API configuration constants."""

    DEFAULT_API_VERSION: Final[str] = "9.2"
    """Web API version segment used in /api/data/v{version}."""

    DEFAULT_TIMEOUT_SECONDS: Final[int] = 30
    """Default HTTP request timeout."""

    ENTITY_TIMEOUT_SECONDS: Final[int] = 120
    """Timeout for entity creation (metadata writes are slow)."""

    DELETE_ENTITY_TIMEOUT_SECONDS: Final[int] = 300
    """Entity deletions can take several minutes."""

    LANGUAGE_CODE: Final[int] = 1033
    """Language code for localized labels."""

    RETRYABLE_STATUS_CODES: Final[tuple] = (429, 500, 502, 503, 504)
    """HTTP statuses classified as retryable."""

    RETRYABLE_ERROR_CODES: Final[tuple] = (
        "0x80071151",  # customization lock held by another import/publish
        "0x80044150",  # generic SQL timeout surfaced by metadata service
        "0x80040216",  # unexpected platform error, transient in practice
        "0x80060891",  # another user has changed the record (concurrency)
        "0x8004F016",  # entity metadata not yet published
        "0x80072322",  # service busy
    )
    """Structured Dataverse error codes classified as retryable."""


# ============================================================================
# Deployment Defaults
# ============================================================================

class DeploymentDefaults:
    """Concurrency, retry, and readiness defaults for deployments."""

    ENTITY_BATCH_SIZE: Final[int] = 3
    """Entities created concurrently per batch."""

    RELATIONSHIP_BATCH_SIZE: Final[int] = 5
    """Relationships created concurrently per group."""

    MAX_RETRIES: Final[int] = 5
    """Attempts per retryable remote operation."""

    ATTRIBUTE_BATCH_RETRIES: Final[int] = 3
    """Attempts for a $batch attribute call before falling back."""

    SOLUTION_LINK_RETRIES: Final[int] = 3
    """Attempts to add an entity to the solution."""

    BASE_DELAY_SECONDS: Final[float] = 2.0
    """First backoff delay."""

    MAX_DELAY_SECONDS: Final[float] = 30.0
    """Backoff delay cap."""

    JITTER_SECONDS: Final[float] = 1.0
    """Upper bound of random jitter added to each backoff."""

    POLL_INTERVAL_SECONDS: Final[float] = 2.0
    """Interval between entity readiness checks."""

    READY_TIMEOUT_SECONDS: Final[float] = 60.0
    """Soft timeout for entity readiness polling."""

    ENTITY_SETTLE_SECONDS: Final[float] = 3.0
    """Delay after each successful entity creation."""

    RELATIONSHIP_WAIT_SECONDS: Final[float] = 15.0
    """Strategic wait before the first relationship group."""

    ATTRIBUTE_SETTLE_SECONDS: Final[float] = 1.5
    """Delay after each attribute batch."""

    DEFAULT_PUBLISHER_NAME: Final[str] = "Mermaid Publisher"
    """Publisher friendly name used when none is supplied."""

    STREAM_HEARTBEAT_SECONDS: Final[float] = 15.0
    """Idle interval after which a streamed deployment emits a heartbeat event."""


# ============================================================================
# Dataverse Limits and Reserved Names
# ============================================================================

class DataverseLimits:
    """Naming limits and reserved identifiers enforced during validation."""

    MAX_ENTITY_NAME_LENGTH: Final[int] = 50
    """Maximum length for entity names."""

    MAX_ATTRIBUTE_NAME_LENGTH: Final[int] = 50
    """Maximum length for attribute names."""

    MAX_RELATIONSHIP_NAME_LENGTH: Final[int] = 100
    """Maximum length for relationship names."""

    STRING_MAX_LENGTH: Final[int] = 4000
    """MaxLength for generic string columns."""

    PRIMARY_NAME_MAX_LENGTH: Final[int] = 850
    """MaxLength for the primary name column."""

    OPTION_VALUE_BASE: Final[int] = 100000000
    """First option value for generated choice options."""

    SYSTEM_FIELDS: Final[frozenset] = frozenset({
        "createdon", "createdby", "modifiedon", "modifiedby",
    })
    """Columns Dataverse provides natively; dropped while parsing."""

    SYSTEM_ATTRIBUTES: Final[frozenset] = frozenset({
        "statuscode", "statecode", "ownerid", "owninguser", "owningteam",
    })
    """Attribute names that collide with Dataverse system columns."""

    SYSTEM_COLUMNS: Final[frozenset] = frozenset({
        "ownerid", "statecode", "statuscode",
    })
    """System columns reported by the naming checks."""

    RESERVED_ATTRIBUTE_NAMES: Final[frozenset] = frozenset({
        "status", "statecode", "statuscode", "description", "createdon", "modifiedon",
    })
    """Attribute names prefixed with the entity name when materialized."""

    RESERVED_ENTITY_NAMES: Final[frozenset] = frozenset({
        "account", "contact", "lead", "opportunity", "incident", "systemuser",
        "team", "businessunit", "organization", "role", "activitypointer",
        "annotation", "email", "task", "appointment", "phonecall", "queue",
        "solution", "publisher", "transactioncurrency", "user",
    })
    """Dataverse system entity names."""

    SQL_RESERVED_WORDS: Final[frozenset] = frozenset({
        "select", "from", "where", "insert", "update", "delete", "table",
        "index", "order", "group", "by", "join", "union", "create", "drop",
        "alter", "key", "primary", "foreign", "references", "null", "not",
        "and", "or", "into", "values", "view", "column", "constraint",
        "default", "check", "unique", "grant", "revoke", "user", "session",
    })
    """Generic SQL reserved words."""


# ============================================================================
# Rollback / History
# ============================================================================

class RollbackConfig:
    """Rollback tracking configuration."""

    STATUS_EXPIRY_SECONDS: Final[int] = 3600
    """Completed/failed tracker entries expire after one hour."""

    MAX_TRACKED_ROLLBACKS: Final[int] = 100
    """Ring buffer capacity for rollback status entries."""

    PHASES: Final[tuple] = (
        "preparation",
        "relationships",
        "entities",
        "global-choices",
        "solution",
        "publisher",
        "finalization",
    )
    """Rollback phases in execution order."""


class HistoryConfig:
    """Deployment history store defaults."""

    DEFAULT_DIRECTORY: Final[str] = "data/deployments"
    """Default directory for deployment records."""

    DEFAULT_HISTORY_LIMIT: Final[int] = 20
    """Records returned by a history query."""

    MAX_RECORDS_PER_ENVIRONMENT: Final[int] = 50
    """Records kept per environment before cleanup."""


# ============================================================================
# Validation Guard
# ============================================================================

class ValidationGuardConfig:
    """Limits applied to incoming validation requests."""

    REQUESTS_PER_MINUTE: Final[int] = 60
    """Maximum validations per rolling minute."""

    MAX_CONTENT_SIZE_MB: Final[float] = 2.0
    """Maximum ERD text size."""

    MAX_CONCURRENT: Final[int] = 5
    """Maximum concurrent validations."""

    MAX_MEMORY_PERCENT: Final[float] = 90.0
    """Reject validations above this system memory usage."""


# ============================================================================
# Logging
# ============================================================================

class LoggingConfig:
    """Logging configuration."""

    DEFAULT_LOG_LEVEL: Final[str] = "INFO"
    """Default logging level."""

    LOG_FORMAT: Final[str] = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    """Default log format string."""

    DATE_FORMAT: Final[str] = "%Y-%m-%d %H:%M:%S"
    """Default date format for logs."""

    DEFAULT_FORMAT_STYLE: Final[str] = "text"
    """Human-readable formatter style."""

    JSON_DATE_FORMAT: Final[str] = "%Y-%m-%dT%H:%M:%S.%fZ"
    """ISO-8601 timestamp format for structured logs."""

    SUPPORTED_FORMATS: Final[tuple[str, ...]] = ("text", "json")
    """Supported formatter styles."""

    DEFAULT_LOG_FILENAME: Final[str] = "erd_to_dataverse.log"
    """Log file name used for fallback locations."""

    MAX_LOG_FILE_MB: Final[int] = 10
    """Maximum log file size before rotation (MB)."""

    LOG_BACKUP_COUNT: Final[int] = 5
    """Number of backup log files to keep."""

    ROTATION_ENABLED: Final[bool] = True
    """Enable log rotation by default when a file handler is configured."""
