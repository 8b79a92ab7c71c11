"""
Base command class.

Every CLI command inherits from ``BaseCommand`` and implements
``execute(args) -> int``. Collaborators (validation service, Dataverse
client, history store) can be injected for tests and are otherwise built
lazily from the configuration file.
"""

import argparse
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from constants import ExitCode
from core.dataverse_client import DataverseClient, DataverseConfig
from core.deployment import DeploymentHistoryStore, DeploymentSettings
from core.validators import InputValidator
from formats.mermaid import ERDValidationService

from ..helpers import get_default_config_path, load_config, setup_logging


logger = logging.getLogger(__name__)

SEVERITY_MARKERS = {"error": "✗", "warning": "⚠", "info": "ℹ"}


# ============================================================================
# Helper Utilities
# ============================================================================

def print_findings(warnings: List[Dict[str, Any]], verbose: bool = False) -> None:
    """Print validation findings grouped by severity."""
    for severity in ("error", "warning", "info"):
        group = [w for w in warnings if w.get("severity") == severity]
        if not group or (severity == "info" and not verbose):
            continue
        print(f"\n{severity.capitalize()}s ({len(group)}):")
        for warning in group:
            fixable = " [auto-fixable]" if warning.get("autoFixable") else ""
            print(f"  {SEVERITY_MARKERS[severity]} {warning['message']}{fixable}")
            if verbose and warning.get("suggestion"):
                print(f"      → {warning['suggestion']}")


def read_erd(path: str) -> str:
    """Read an ERD file, raising the InputValidator errors unchanged."""
    return InputValidator.read_erd_file(path)


def exit_code_for(exc: BaseException) -> ExitCode:
    if isinstance(exc, FileNotFoundError):
        return ExitCode.FILE_NOT_FOUND
    if isinstance(exc, PermissionError):
        return ExitCode.PERMISSION_DENIED
    return ExitCode.ERROR


# ============================================================================
# Base Command Class
# ============================================================================

class BaseCommand(ABC):
    """
    Base class for CLI commands.

    Provides configuration loading, logging setup and lazily built
    collaborators. Subclasses implement ``execute()``.
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        validation_service: Optional[ERDValidationService] = None,
        client: Optional[DataverseClient] = None,
        history: Optional[DeploymentHistoryStore] = None,
    ):
        self.config_path = config_path or get_default_config_path()
        self._validation_service = validation_service
        self._client = client
        self._history = history
        self._config: Optional[Dict[str, Any]] = None

    @property
    def config(self) -> Dict[str, Any]:
        """Lazy-load configuration."""
        if self._config is None:
            self._config = load_config(self.config_path)
        return self._config

    def _optional_config(self) -> Dict[str, Any]:
        """Configuration when the file exists, otherwise an empty dict."""
        if self._config is None and not Path(self.config_path).exists():
            return {}
        return self.config

    def get_validation_service(self) -> ERDValidationService:
        if self._validation_service is None:
            self._validation_service = ERDValidationService()
        return self._validation_service

    def get_client(self) -> DataverseClient:
        if self._client is None:
            self._client = DataverseClient(DataverseConfig.from_dict(self.config))
        return self._client

    def get_history(self) -> DeploymentHistoryStore:
        if self._history is None:
            self._history = DeploymentHistoryStore.from_dict(self._optional_config())
        return self._history

    def get_settings(self) -> DeploymentSettings:
        return DeploymentSettings.from_dict(self._optional_config())

    def setup_logging_from_config(self, allow_missing: bool = True) -> None:
        """Set up logging from the ``logging`` section, tolerating a missing config file."""
        log_config: Dict[str, Any] = {}
        try:
            log_config = self._optional_config().get("logging", {}) if allow_missing else self.config.get("logging", {})
        except (ValueError, PermissionError) as exc:
            if not allow_missing:
                raise
            print(f"Warning: Could not load logging configuration: {exc}")
        setup_logging(config=log_config)

    @abstractmethod
    def execute(self, args: argparse.Namespace) -> int:
        """
        Execute the command.

        Returns:
            An ``ExitCode`` value.
        """
