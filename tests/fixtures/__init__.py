"""
Centralized test fixtures for the Mermaid ERD to Dataverse test suite.

This package provides reusable fixtures for testing, including:
- Mermaid ERD sample content
- Configuration fixtures
- An in-memory Dataverse client double

Usage:
    from fixtures import SIMPLE_ERD, SAMPLE_DATAVERSE_CONFIG, FakeDataverseClient

Or use the pytest fixtures in conftest.py which import from here.
"""

from .erd_fixtures import (
    # Valid ERDs
    SIMPLE_ERD,
    CHOICE_ERD,

    # ERDs with findings
    MISSING_PK_ERD,
    MANY_TO_MANY_ERD,
    CIRCULAR_ERD,
    MISSING_ENTITY_ERD,
    CDM_ERD,
    DUPLICATE_COLUMNS_ERD,
    MALFORMED_ERD,
)

from .config_fixtures import (
    SAMPLE_DATAVERSE_CONFIG,
    MINIMAL_DATAVERSE_CONFIG,
)

from .fake_dataverse import (
    FakeDataverseClient,
    api_error,
    fail_on,
)

from .metadata_fixtures import (
    SAMPLE_SOLUTION,
    SAMPLE_SOLUTION_METADATA,
)

__all__ = [
    # ERD fixtures
    "SIMPLE_ERD",
    "CHOICE_ERD",
    "MISSING_PK_ERD",
    "MANY_TO_MANY_ERD",
    "CIRCULAR_ERD",
    "MISSING_ENTITY_ERD",
    "CDM_ERD",
    "DUPLICATE_COLUMNS_ERD",
    "MALFORMED_ERD",

    # Config fixtures
    "SAMPLE_DATAVERSE_CONFIG",
    "MINIMAL_DATAVERSE_CONFIG",

    # Client double
    "FakeDataverseClient",
    "api_error",
    "fail_on",

    # Metadata catalog
    "SAMPLE_SOLUTION",
    "SAMPLE_SOLUTION_METADATA",
]
