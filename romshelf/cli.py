"""Command-line interface for romshelf."""

import sys
import signal
import logging
import argparse
import asyncio
import httpx
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

from romshelf import __version__
from romshelf.config.loader import load_config, ConfigError
from romshelf.config.validator import validate_config, ValidationError, OUTPUT_FORMATS
from romshelf.api.cache import DiskStore, ResponseCache
from romshelf.api.client import MetadataClient
from romshelf.api.error_handler import FatalAPIError
from romshelf.api.gate import RequestGate
from romshelf.api.platforms import PlatformRegistry
from romshelf.api.search_strategy import SearchStrategyEngine
from romshelf.library.store import LibraryStore, OutputNotWritableError
from romshelf.media.downloader import ImageDownloader
from romshelf.media.media_resolver import MediaResolver
from romshelf.scanner.folder_mapper import MAPPINGS_FILENAME, FolderMapper
from romshelf.scanner.rom_scanner import ScannerError
from romshelf.ui.console import SummaryConsole
from romshelf.workflow.orchestrator import BatchOrchestrator

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


def create_parser() -> argparse.ArgumentParser:
    """Create and configure argument parser."""
    parser = argparse.ArgumentParser(
        prog='romshelf',
        description='Catalog a ROM collection with game metadata, cover art and screenshots',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Catalog using ./config.yaml
  romshelf

  # Catalog a ROM folder into ./library as XML
  romshelf --roms ~/roms --output ./library --format xml

  # Keep remote image URLs instead of downloading images
  romshelf --lazy-download

  # Catalog without network access (records without metadata)
  romshelf --offline

  # Re-query titles that failed to match on earlier runs
  romshelf --retry-unmatched
        """
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    parser.add_argument(
        '--config',
        type=Path,
        metavar='PATH',
        help='Path to config.yaml (default: ./config.yaml if present)'
    )

    parser.add_argument(
        '--roms',
        nargs='+',
        metavar='DIR',
        help='ROM root directories; each subfolder is one console. Overrides config.'
    )

    parser.add_argument(
        '--output',
        metavar='DIR',
        help='Output directory for library files. Overrides config.'
    )

    parser.add_argument(
        '--format',
        choices=OUTPUT_FORMATS,
        help='Library file format. Overrides config.'
    )

    parser.add_argument(
        '--offline',
        action='store_true',
        help='Do not contact the metadata API; catalog files without metadata.'
    )

    parser.add_argument(
        '--lazy-download',
        action='store_true',
        help='Store image URLs instead of downloading images.'
    )

    parser.add_argument(
        '--batch-size',
        type=int,
        metavar='N',
        help='Entries per processing batch. Overrides config.'
    )

    parser.add_argument(
        '--checkpoint-every',
        type=int,
        metavar='N',
        help='Entries between library saves. Overrides config.'
    )

    parser.add_argument(
        '--threshold',
        type=float,
        metavar='SCORE',
        help='Fuzzy match threshold (0.0-1.0). Overrides config.'
    )

    parser.add_argument(
        '--retry-unmatched',
        action='store_true',
        help='Look up ROMs listed in unmatched.json again.'
    )

    return parser


def apply_overrides(config: Dict[str, Any], args: argparse.Namespace) -> Dict[str, Any]:
    """Apply command-line overrides to a loaded configuration in place."""
    paths = config['paths']
    runtime = config['runtime']

    if args.roms:
        paths['roms'] = [str(Path(r).expanduser()) for r in args.roms]

    if args.output:
        previous = Path(str(paths['output'])).expanduser()
        paths['output'] = args.output
        # Derived locations follow the new output directory
        if Path(str(paths['images'])) == previous / 'images':
            paths['images'] = str(Path(args.output) / 'images')
        if Path(str(config['cache']['directory'])) == previous / '.cache':
            config['cache']['directory'] = str(Path(args.output) / '.cache')

    if args.format:
        config['output']['format'] = args.format

    if args.offline:
        runtime['offline_mode'] = True

    if args.lazy_download:
        runtime['lazy_download'] = True

    if args.batch_size is not None:
        runtime['batch_size'] = args.batch_size

    if args.checkpoint_every is not None:
        runtime['checkpoint_every'] = args.checkpoint_every

    if args.threshold is not None:
        config['matching']['fuzzy_threshold'] = args.threshold

    if args.retry_unmatched:
        runtime['retry_unmatched'] = True

    return config


def _setup_logging(config: dict) -> None:
    """
    Setup logging configuration from config.

    Args:
        config: Configuration dictionary
    """
    logging_config = config.get('logging', {})

    level_str = logging_config.get('level', 'INFO').upper()
    level = getattr(logging, level_str, logging.INFO)

    handlers = []

    if logging_config.get('console', True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
        handlers.append(console_handler)

    log_file = logging_config.get('file')
    if log_file:
        try:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(level)
            formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except OSError as e:
            print(f"Error: Could not create log file '{log_file}': {e}", file=sys.stderr)
            sys.exit(1)

    logging.basicConfig(
        level=level,
        handlers=handlers,
        force=True
    )

    # httpx logs full URLs at DEBUG, including the token endpoint query string
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)

    logging.getLogger('PIL').setLevel(logging.INFO)


def main(argv: Optional[list] = None) -> int:
    """
    Main entry point for romshelf CLI.

    Args:
        argv: Command-line arguments (default: sys.argv)

    Returns:
        Exit code (0 success, 1 fatal or configuration error, 130 interrupted)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config, require_file=args.config is not None)
        apply_overrides(config, args)
        validate_config(config)
    except (ConfigError, ValidationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_ERROR

    _setup_logging(config)

    try:
        return asyncio.run(run_catalog(config))
    except KeyboardInterrupt:
        print("\n\nCatalog run interrupted by user.", file=sys.stderr)
        return EXIT_INTERRUPTED


def _install_signal_handlers(orchestrator: BatchOrchestrator) -> list:
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.request_shutdown)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform; KeyboardInterrupt still applies
            pass
    return installed


def _remove_signal_handlers(installed: list) -> None:
    loop = asyncio.get_running_loop()
    for sig in installed:
        loop.remove_signal_handler(sig)


def build_cache(config: Dict[str, Any]) -> ResponseCache:
    """Create the two-tier response cache from the ``cache`` section."""
    cache_config = config.get('cache', {})
    durable = None
    if cache_config.get('durable', True):
        durable = DiskStore(Path(cache_config['directory']).expanduser())
    return ResponseCache(
        durable=durable,
        ttl_seconds=cache_config.get('ttl_hours', 24) * 3600,
        max_items=cache_config.get('max_items', 5000),
        max_bytes=cache_config.get('max_bytes', 50 * 1024 * 1024),
        reconnect_interval=cache_config.get('reconnect_interval_seconds', 30),
    )


def build_gate(config: Dict[str, Any]) -> RequestGate:
    """Create the request gate from the ``rate_limit`` section."""
    rate_config = config.get('rate_limit', {})
    return RequestGate(
        requests_per_second=rate_config.get('requests_per_second', 4),
        refill_interval=rate_config.get('refill_interval_ms', 1000) / 1000.0,
        max_concurrency=rate_config.get('max_concurrency', 4),
        adaptive=rate_config.get('adaptive', True),
    )


async def run_catalog(config: Dict[str, Any], console: Optional[SummaryConsole] = None) -> int:
    """
    Run one catalog pass (async).

    Args:
        config: Validated configuration
        console: Output console for the summary

    Returns:
        Exit code
    """
    console = console or SummaryConsole()
    runtime = config['runtime']
    offline = runtime.get('offline_mode', False)
    output_dir = Path(str(config['paths']['output'])).expanduser()

    store = LibraryStore(output_dir, fmt=config['output'].get('format', 'json'))
    try:
        store.ensure_writable()
    except OutputNotWritableError as e:
        logger.error(str(e))
        console.show_error(str(e))
        return EXIT_ERROR

    cache = build_cache(config)
    gate = build_gate(config)
    installed: list = []

    try:
        async with gate, httpx.AsyncClient() as http_client:
            client = MetadataClient(config, gate, client=http_client, cache=cache)

            if offline:
                logger.info("Offline mode: records are created without metadata")
                registry = PlatformRegistry()
                engine = None
            else:
                registry = await client.fetch_platform_registry()
                engine = SearchStrategyEngine.from_config(config, client)

            mapper = FolderMapper(
                registry,
                mappings_path=output_dir / MAPPINGS_FILENAME,
                auto_select_confidence=config['matching'].get('auto_select_confidence', 0.8),
            )
            media = MediaResolver(
                Path(str(config['paths']['images'])).expanduser(),
                downloader=ImageDownloader(http_client),
                lazy=runtime.get('lazy_download', False),
            )
            orchestrator = BatchOrchestrator(
                config,
                store,
                engine=engine,
                folder_mapper=mapper,
                media=media,
                match_cache=cache,
            )

            installed = _install_signal_handlers(orchestrator)
            summary = await orchestrator.run()
    except FatalAPIError as e:
        logger.error(f"Fatal API error: {e}")
        console.show_error(str(e))
        return EXIT_ERROR
    except (OutputNotWritableError, ScannerError, OSError) as e:
        logger.error(f"Run failed: {e}")
        console.show_error(str(e))
        return EXIT_ERROR
    finally:
        _remove_signal_handlers(installed)
        await cache.close()

    console.print_summary(summary, cache.get_stats(), gate.get_stats())

    if summary.interrupted:
        return EXIT_INTERRUPTED
    return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
