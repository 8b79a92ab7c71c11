#!/usr/bin/env python3
"""
Mermaid ERD to Microsoft Dataverse Converter

Main entry point for the command line interface.

Usage:
    python main.py validate <erd_file> [--entity-choice cdm|custom] [--verbose]
    python main.py fix <erd_file> [--auto-only] [--output <fixed.mmd>]
    python main.py convert <erd_file> --prefix <prefix> [--output <schema.json>]
    python main.py deploy <erd_file> --solution <name> --publisher <name> --prefix <prefix> [--config <config.json>]
    python main.py rollback <deployment_id> [--components ...] [--config <config.json>]
    python main.py history [--environment <suffix>] [--limit <n>]
    python main.py compare <from_id> <to_id>
"""

import sys
from typing import Dict, List, Optional, Type

from app.cli.commands import (
    BaseCommand,
    CompareCommand,
    ConvertCommand,
    DeployCommand,
    ExtractCommand,
    FixCommand,
    HistoryCommand,
    RollbackCommand,
    ValidateCommand,
)
from app.cli.parsers import create_argument_parser
from constants import ExitCode


COMMANDS: Dict[str, Type[BaseCommand]] = {
    'validate': ValidateCommand,
    'fix': FixCommand,
    'convert': ConvertCommand,
    'deploy': DeployCommand,
    'rollback': RollbackCommand,
    'history': HistoryCommand,
    'compare': CompareCommand,
    'extract': ExtractCommand,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, run the selected command and return its exit code."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return ExitCode.ERROR

    command = COMMANDS[args.command](config_path=getattr(args, 'config', None))
    try:
        return int(command.execute(args))
    except KeyboardInterrupt:
        print("\nOperation cancelled.")
        return ExitCode.CANCELLED


if __name__ == '__main__':
    sys.exit(main())
