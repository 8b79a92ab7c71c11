"""
Pytest configuration and fixtures for the test suite.

Defines markers for selective test execution:
    pytest -m unit          # Fast unit tests
    pytest -m integration   # Integration tests
    pytest -m slow          # Tests that take >1s
    pytest -m security      # Security-related tests
    pytest -m resilience    # Retry, rate limiting, cancellation

Fixtures are centralized in tests/fixtures/ for reuse across all test modules.
"""

import copy
import json
import os
import sys

import pytest

# IMPORTANT: Patch tenacity's sleep function BEFORE any other imports
# This must happen before tenacity.Retrying class is defined (which captures defaults)
import tenacity.nap
tenacity.nap.sleep = lambda seconds: None

# Add src to path for imports
src_dir = os.path.join(os.path.dirname(__file__), '..', 'src')
if src_dir not in sys.path:
    sys.path.insert(0, src_dir)

# Add tests directory to path for fixtures import
tests_dir = os.path.dirname(__file__)
if tests_dir not in sys.path:
    # Ensure src directory stays ahead of tests for module resolution
    sys.path.insert(1, tests_dir)

# Import centralized fixtures
from fixtures import (
    # ERD fixtures
    SIMPLE_ERD,
    CHOICE_ERD,
    MISSING_PK_ERD,
    MANY_TO_MANY_ERD,
    CIRCULAR_ERD,
    MISSING_ENTITY_ERD,
    CDM_ERD,

    # Config fixtures
    SAMPLE_DATAVERSE_CONFIG,
    MINIMAL_DATAVERSE_CONFIG,

    # Client double
    FakeDataverseClient,
)


def pytest_addoption(parser):
    """Add custom command-line options."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run live integration tests against a real Dataverse environment"
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "integration: Integration tests requiring setup")
    config.addinivalue_line("markers", "slow: Tests that take more than 1 second")
    config.addinivalue_line("markers", "security: Security-related tests (path traversal, symlinks)")
    config.addinivalue_line("markers", "resilience: Retry, rate limiting and cancellation tests")
    config.addinivalue_line("markers", "live: Live integration tests against a real Dataverse environment")

    # Set environment variable if --run-live is passed
    if config.getoption("--run-live"):
        os.environ["DATAVERSE_LIVE_TESTS"] = "1"


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless explicitly enabled."""
    if config.getoption("--run-live") or os.environ.get("DATAVERSE_LIVE_TESTS") == "1":
        return

    skip_live = pytest.mark.skip(
        reason="Live tests disabled. Use --run-live to enable or set DATAVERSE_LIVE_TESTS=1"
    )

    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# =============================================================================
# ERD Fixtures
# =============================================================================

@pytest.fixture
def simple_erd():
    """Two related custom tables with no findings."""
    return SIMPLE_ERD


@pytest.fixture
def choice_erd():
    """Table with a local choice column and a lookup column."""
    return CHOICE_ERD


@pytest.fixture
def missing_pk_erd():
    """Single table without a primary key."""
    return MISSING_PK_ERD


@pytest.fixture
def many_to_many_erd():
    """Student/Course many-to-many relationship."""
    return MANY_TO_MANY_ERD


@pytest.fixture
def circular_erd():
    """Alpha -> Beta -> Gamma -> Alpha cycle."""
    return CIRCULAR_ERD


@pytest.fixture
def missing_entity_erd():
    """Relationship to an entity that is never declared."""
    return MISSING_ENTITY_ERD


@pytest.fixture
def cdm_erd():
    """Account (a CDM table) related to a custom Project table."""
    return CDM_ERD


@pytest.fixture
def temp_erd_file(tmp_path, simple_erd):
    """Create a temporary ERD file for testing."""
    erd_file = tmp_path / "model.mmd"
    erd_file.write_text(simple_erd, encoding="utf-8")
    return str(erd_file)


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def sample_config():
    """Sample Dataverse configuration dictionary with zeroed delays."""
    return copy.deepcopy(SAMPLE_DATAVERSE_CONFIG)


@pytest.fixture
def minimal_config():
    """Minimal Dataverse configuration dictionary."""
    return copy.deepcopy(MINIMAL_DATAVERSE_CONFIG)


@pytest.fixture
def temp_config_file(tmp_path, sample_config):
    """Create a temporary configuration file for testing."""
    sample_config["history"]["directory"] = str(tmp_path / "deployments")
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps(sample_config, indent=2))
    return str(config_file)


# =============================================================================
# Deployment Fixtures
# =============================================================================

@pytest.fixture
def fast_settings(sample_config):
    """DeploymentSettings with no delays."""
    from core.deployment import DeploymentSettings
    return DeploymentSettings.from_dict(sample_config)


@pytest.fixture
def history_store(tmp_path):
    """Deployment history store in a temporary directory."""
    from core.deployment import DeploymentHistoryStore
    return DeploymentHistoryStore(tmp_path / "deployments")


@pytest.fixture
def fake_client():
    """In-memory Dataverse client double."""
    return FakeDataverseClient()


@pytest.fixture
def no_sleep():
    """Async sleep replacement that returns immediately."""
    async def _no_sleep(seconds):
        return None
    return _no_sleep


# =============================================================================
# Utility Fixtures
# =============================================================================

@pytest.fixture
def input_validator():
    """Get InputValidator class for path validation tests."""
    from core.validators import InputValidator
    return InputValidator
