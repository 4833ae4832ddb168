"""ROM entry data structure."""

from dataclasses import dataclass


@dataclass(frozen=True)
class RomEntry:
    """
    A ROM file discovered on disk.

    This is the unit of work passed through the matching pipeline and is
    never modified after discovery.
    """
    title: str          # File name without extension, annotations included
    platform_key: str   # Console folder name (e.g. 'snes')
    file_path: str      # Absolute path to the ROM file
    file_size: int = 0  # Size in bytes
