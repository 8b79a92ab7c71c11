"""
CLI command implementations.

- base.py: BaseCommand and shared output helpers
- erd.py: ValidateCommand, FixCommand, ConvertCommand (offline)
- deployment.py: DeployCommand, RollbackCommand, HistoryCommand, CompareCommand,
  ExtractCommand
"""

from .base import (
    BaseCommand,
    print_findings,
)

from .erd import (
    ValidateCommand,
    FixCommand,
    ConvertCommand,
)

from .deployment import (
    DeployCommand,
    RollbackCommand,
    HistoryCommand,
    CompareCommand,
    ExtractCommand,
)


__all__ = [
    # Base
    'BaseCommand',
    'print_findings',
    # ERD
    'ValidateCommand',
    'FixCommand',
    'ConvertCommand',
    # Deployment
    'DeployCommand',
    'RollbackCommand',
    'HistoryCommand',
    'CompareCommand',
    'ExtractCommand',
]
