"""
CLI argument parser configuration.

This module defines the argument parser structure for all CLI commands.

Command Structure:
    - validate <file>   Validate a Mermaid ERD
    - fix      <file>   Apply auto-fixes
    - convert  <file>   Generate the Dataverse schema without deploying
    - deploy   <file>   Deploy to a Dataverse environment
    - rollback <id>     Roll back a recorded deployment
    - history           List recorded deployments
    - compare  <a> <b>  Compare the ERDs of two deployments
    - extract           Reverse-engineer a solution into a Mermaid ERD
"""

import argparse

from constants import HistoryConfig


ROLLBACK_COMPONENTS = [
    'relationships', 'customEntities', 'cdmEntities', 'customGlobalChoices',
    'addedGlobalChoices', 'solution', 'publisher',
]


# ============================================================================
# Shared Flag Group Builders
# ============================================================================

def add_output_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--output', '-o',
        help='Output file path'
    )


def add_config_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--config', '-c',
        help='Path to configuration file (default: config.json in the project root)'
    )


def add_entity_choice_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--entity-choice',
        choices=["cdm", "custom"],
        help='Map detected Common Data Model entities to CDM tables or keep them custom'
    )


def add_prefix_flag(parser: argparse.ArgumentParser, required: bool = True) -> None:
    parser.add_argument(
        '--prefix', '-p',
        required=required,
        help='Publisher customization prefix (2-8 lowercase letters/digits, e.g. cr123)'
    )


# ============================================================================
# Main Parser Factory
# ============================================================================

def create_argument_parser() -> argparse.ArgumentParser:
    """
    Create and configure the main argument parser.

    Returns:
        Configured ArgumentParser with all subcommands.
    """
    parser = argparse.ArgumentParser(
        description="Mermaid ERD to Microsoft Dataverse Converter",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Validate and fix
    %(prog)s validate samples/sales.mmd --verbose
    %(prog)s fix samples/sales.mmd --auto-only --output sales.fixed.mmd

    # Generate the schema without deploying
    %(prog)s convert samples/sales.mmd --prefix cr123 --output schema.json

    # Deploy
    %(prog)s deploy samples/sales.mmd --solution SalesSolution --publisher "Contoso" --prefix cr123
    %(prog)s deploy samples/sales.mmd --solution SalesSolution --publisher "Contoso" --prefix cr123 --dry-run

    # History and rollback
    %(prog)s history --environment contoso --limit 10
    %(prog)s compare deploy_1700000000000_ab12cd34 deploy_1700000900000_ef56ab78
    %(prog)s rollback deploy_1700000000000_ab12cd34 --components relationships customEntities

    # Reverse-engineer a solution
    %(prog)s extract --solution SalesSolution --output sales.mmd
        """,
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    _add_validate_parser(subparsers)
    _add_fix_parser(subparsers)
    _add_convert_parser(subparsers)
    _add_deploy_parser(subparsers)
    _add_rollback_parser(subparsers)
    _add_history_parser(subparsers)
    _add_compare_parser(subparsers)
    _add_extract_parser(subparsers)

    return parser


# ============================================================================
# ERD Command Parsers
# ============================================================================

def _add_validate_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser(
        'validate',
        help='Validate a Mermaid ERD for Dataverse compatibility'
    )
    parser.add_argument('path', help='Path to the ERD file')
    add_entity_choice_flag(parser)
    add_output_flags(parser)
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Show every finding with its suggestion'
    )


def _add_fix_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser(
        'fix',
        help='Apply auto-fixes to a Mermaid ERD'
    )
    parser.add_argument('path', help='Path to the ERD file')
    selection = parser.add_mutually_exclusive_group()
    selection.add_argument(
        '--types',
        nargs='+',
        metavar='TYPE',
        help='Only fix these warning types (e.g. missing_primary_key duplicate_columns)'
    )
    selection.add_argument(
        '--auto-only',
        action='store_true',
        help='Only apply fixes marked auto-fixable'
    )
    add_entity_choice_flag(parser)
    add_output_flags(parser)


def _add_convert_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser(
        'convert',
        help='Generate the Dataverse schema document without deploying'
    )
    parser.add_argument('path', help='Path to the ERD file')
    add_prefix_flag(parser)
    add_entity_choice_flag(parser)
    add_output_flags(parser)


# ============================================================================
# Environment Command Parsers
# ============================================================================

def _add_deploy_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser(
        'deploy',
        help='Deploy a Mermaid ERD to Dataverse'
    )
    parser.add_argument('path', help='Path to the ERD file')
    parser.add_argument('--solution', '-s', required=True, help='Solution unique name')
    parser.add_argument('--publisher', required=True, help='Publisher display name')
    add_prefix_flag(parser)
    parser.add_argument('--description', '-d', help='Solution description')
    add_entity_choice_flag(parser)
    add_config_flags(parser)
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Validate and convert, print the plan, but do not deploy'
    )
    parser.add_argument(
        '--force', '-f',
        action='store_true',
        help='Skip the confirmation prompt'
    )
    parser.add_argument(
        '--skip-relationships',
        action='store_true',
        help='Create tables and columns only'
    )


def _add_rollback_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser(
        'rollback',
        help='Roll back a recorded deployment'
    )
    parser.add_argument('deployment_id', help='Deployment ID')
    add_config_flags(parser)
    parser.add_argument(
        '--components',
        nargs='+',
        choices=ROLLBACK_COMPONENTS,
        help='Only remove these components (default: everything the deployment created)'
    )
    parser.add_argument(
        '--force', '-f',
        action='store_true',
        help='Skip the confirmation prompt'
    )


def _add_history_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser(
        'history',
        help='List recorded deployments'
    )
    parser.add_argument('--environment', '-e', help='Environment suffix (default: all environments)')
    parser.add_argument(
        '--limit', '-n',
        type=int,
        default=HistoryConfig.DEFAULT_HISTORY_LIMIT,
        help=f'Maximum entries to show (default: {HistoryConfig.DEFAULT_HISTORY_LIMIT})'
    )
    add_config_flags(parser)


def _add_compare_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser(
        'compare',
        help='Compare the ERDs of two recorded deployments'
    )
    parser.add_argument('from_id', help='Earlier deployment ID')
    parser.add_argument('to_id', help='Later deployment ID')
    add_config_flags(parser)



def _add_extract_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser(
        'extract',
        help='Extract a Dataverse solution as a Mermaid ERD'
    )
    parser.add_argument(
        '--solution', '-s',
        help='Solution unique name (default: every custom table)'
    )
    add_output_flags(parser)
    add_config_flags(parser)
