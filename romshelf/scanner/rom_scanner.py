"""ROM directory scanner."""

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Set

from romshelf.api.name_normalizer import ROM_EXTENSIONS
from romshelf.scanner.rom_types import RomEntry

logger = logging.getLogger(__name__)


class ScannerError(Exception):
    """ROM scanning errors."""
    pass


def _is_rom_file(path: Path, extensions: Set[str]) -> bool:
    return path.is_file() and not path.name.startswith('.') and path.suffix.lower() in extensions


def scan_console(
    console_dir: Path,
    extensions: Optional[Iterable[str]] = None
) -> List[RomEntry]:
    """
    Scan one console folder recursively for ROM files.

    Args:
        console_dir: Folder named after the console (e.g. roms/snes)
        extensions: Accepted file extensions (defaults to ROM_EXTENSIONS)

    Returns:
        RomEntry list sorted by file path

    Raises:
        ScannerError: If the folder cannot be read
    """
    allowed = {e.lower() for e in (extensions or ROM_EXTENSIONS)}
    platform_key = console_dir.name

    try:
        files = sorted(p for p in console_dir.rglob('*') if _is_rom_file(p, allowed))
    except OSError as e:
        raise ScannerError(f"Failed to scan {console_dir}: {e}")

    entries = []
    for path in files:
        try:
            size = path.stat().st_size
        except OSError as e:
            logger.warning(f"Cannot stat {path}: {e}")
            size = 0
        entries.append(RomEntry(
            title=path.stem,
            platform_key=platform_key,
            file_path=str(path.resolve()),
            file_size=size,
        ))

    logger.debug(f"Found {len(entries)} ROMs in {console_dir}")
    return entries


def scan_roms(
    roots: Iterable[str],
    extensions: Optional[Iterable[str]] = None
) -> List[RomEntry]:
    """
    Discover ROM files under one or more root directories.

    Every immediate subdirectory of a root is treated as a console folder.
    Missing roots are skipped with a warning; hidden folders are ignored.

    Args:
        roots: Root directories
        extensions: Accepted file extensions (defaults to ROM_EXTENSIONS)

    Returns:
        RomEntry list, sorted by console then path
    """
    entries: List[RomEntry] = []
    for root in roots:
        root_path = Path(root).expanduser()
        if not root_path.is_dir():
            logger.warning(f"ROM directory not found, skipping: {root_path}")
            continue

        for console_dir in sorted(p for p in root_path.iterdir() if p.is_dir()):
            if console_dir.name.startswith('.'):
                continue
            try:
                entries.extend(scan_console(console_dir, extensions))
            except ScannerError as e:
                logger.warning(str(e))

    entries.sort(key=lambda e: (e.platform_key.lower(), e.file_path))
    logger.info(f"Discovered {len(entries)} ROM files")
    return entries
