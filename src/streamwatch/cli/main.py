"""
Main CLI entry point for streamwatch.

Provides the ``streamwatch`` command with argument parsing, command routing
and global options handling.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from .. import __version__
from ..lib.config import ConfigurationError, ConfigurationManager, ValidationLevel
from ..lib.logging import setup_logging
from ..services.manager import MonitorManager

logger = logging.getLogger(__name__)

# Exit codes
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser."""
    parser = argparse.ArgumentParser(
        prog='streamwatch',
        description='Live stream status monitor publishing transitions to Redis',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  streamwatch config validate
  streamwatch config show --format json
  streamwatch run
  streamwatch --config production.env run --log-level DEBUG
        """
    )

    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument(
        '--config', '-c',
        type=str,
        help='Configuration file path (default: .env or environment variables)'
    )
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose output')

    subparsers = parser.add_subparsers(dest='command', help='Available commands', metavar='COMMAND')

    run_parser = subparsers.add_parser('run', help='Run the monitor until interrupted')
    run_parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Override SYSTEM_LOG_LEVEL'
    )
    run_parser.add_argument(
        '--rich',
        action='store_true',
        help='Human-readable console logs instead of JSON'
    )

    config_parser = subparsers.add_parser('config', help='Configuration management')
    config_subparsers = config_parser.add_subparsers(dest='config_command', metavar='ACTION')

    validate_parser = config_subparsers.add_parser('validate', help='Validate configuration')
    validate_parser.add_argument(
        '--lenient',
        action='store_true',
        help='Report missing required settings as warnings'
    )

    show_parser = config_subparsers.add_parser('show', help='Show effective configuration')
    show_parser.add_argument('--format', choices=['table', 'json'], default='table', help='Output format')
    show_parser.add_argument(
        '--show-secrets',
        action='store_true',
        help='Print secret values unmasked'
    )

    return parser


def load_config(args: argparse.Namespace, level: ValidationLevel = ValidationLevel.STRICT) -> ConfigurationManager:
    return ConfigurationManager(env_file=args.config, validation_level=level)


def config_validate(args: argparse.Namespace, console: Console) -> int:
    level = ValidationLevel.LENIENT if args.lenient else ValidationLevel.STRICT
    config = load_config(args, level)
    result = config.validate_configuration()

    for error in result.errors:
        console.print(f"[red]✗[/red] {error}")
    for invalid in result.invalid_values:
        console.print(f"[red]✗[/red] Invalid value {invalid}")
    for warning in result.warnings:
        console.print(f"[yellow]⚠[/yellow] {warning}")

    if result.has_errors:
        console.print("[red]Configuration validation failed[/red]")
        return EXIT_CONFIG

    platforms = ", ".join(config.enabled_platforms()) or "none"
    console.print(f"[green]✓[/green] Configuration valid (platforms: {platforms})")
    return EXIT_OK


def config_show(args: argparse.Namespace, console: Console) -> int:
    config = load_config(args, ValidationLevel.LENIENT)
    data = config.get_all_config(include_sources=True, mask_secrets=not args.show_secrets)

    if args.format == 'json':
        print(json.dumps(data, indent=2, sort_keys=True, default=str))
        return EXIT_OK

    table = Table(title="streamwatch configuration")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    table.add_column("Source", style="dim")
    for key in sorted(data['config']):
        table.add_row(key, str(data['config'][key]), data['sources'].get(key, ''))
    console.print(table)
    return EXIT_OK


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            signal.signal(signum, lambda *_: loop.call_soon_threadsafe(stop_event.set))


async def run_monitor(config: ConfigurationManager) -> int:
    manager = MonitorManager.from_config(config)
    if not manager.pollers:
        logger.error("No platform is enabled, nothing to monitor")
        return EXIT_CONFIG

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    await manager.run_until(stop_event)
    return EXIT_OK


def run(args: argparse.Namespace) -> int:
    config = load_config(args)
    result = config.validate_configuration()
    if result.has_errors:
        for message in result.errors + result.invalid_values:
            print(f"Configuration error: {message}", file=sys.stderr)
        return EXIT_CONFIG

    level = 'DEBUG' if args.verbose else (args.log_level or config.get('SYSTEM_LOG_LEVEL', 'INFO'))
    setup_logging(
        level=level,
        log_file=config.get('SYSTEM_LOG_FILE') or None,
        json_format=config.get_bool('SYSTEM_LOG_JSON', True),
        rich_console=args.rich,
    )
    for warning in result.warnings:
        logger.warning(warning)

    return asyncio.run(run_monitor(config))


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    console = Console()
    try:
        if args.command == 'run':
            return run(args)

        if args.command == 'config':
            if args.config_command == 'validate':
                return config_validate(args, console)
            if args.config_command == 'show':
                return config_show(args, console)
            parser.parse_args(['config', '--help'])

        return EXIT_ERROR

    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except KeyboardInterrupt:
        print("\nOperation cancelled", file=sys.stderr)
        return EXIT_ERROR


if __name__ == '__main__':
    sys.exit(main())
