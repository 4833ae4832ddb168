"""Console folder name to metadata API platform id resolution."""

import logging
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


# Common folder names -> platform name as listed by the API (lower case)
PLATFORM_ALIASES = {
    'snes': 'super nintendo entertainment system',
    'super nintendo': 'super nintendo entertainment system',
    'super nes': 'super nintendo entertainment system',
    'super famicom': 'super nintendo entertainment system',
    'sfc': 'super nintendo entertainment system',
    'nes': 'nintendo entertainment system',
    'famicom': 'nintendo entertainment system',
    'fc': 'nintendo entertainment system',
    'genesis': 'sega mega drive/genesis',
    'megadrive': 'sega mega drive/genesis',
    'mega drive': 'sega mega drive/genesis',
    'sega genesis': 'sega mega drive/genesis',
    'md': 'sega mega drive/genesis',
    'gba': 'game boy advance',
    'gameboy advance': 'game boy advance',
    'gb': 'game boy',
    'gameboy': 'game boy',
    'gbc': 'game boy color',
    'gameboy color': 'game boy color',
    'n64': 'nintendo 64',
    'atari2600': 'atari 2600',
    'a2600': 'atari 2600',
    '2600': 'atari 2600',
    'atari7800': 'atari 7800',
    '7800': 'atari 7800',
    'jaguar': 'atari jaguar',
    'lynx': 'atari lynx',
    'coleco': 'colecovision',
    'c64': 'commodore c64/128/max',
    'commodore 64': 'commodore c64/128/max',
    'sms': 'sega master system/mark iii',
    'master system': 'sega master system/mark iii',
    'mastersystem': 'sega master system/mark iii',
    'gamegear': 'sega game gear',
    'game gear': 'sega game gear',
    'gg': 'sega game gear',
    'pce': 'turbografx-16/pc engine',
    'pc engine': 'turbografx-16/pc engine',
    'pcengine': 'turbografx-16/pc engine',
    'turbografx': 'turbografx-16/pc engine',
    'turbografx 16': 'turbografx-16/pc engine',
    'tg16': 'turbografx-16/pc engine',
    'virtualboy': 'virtual boy',
    'psx': 'playstation',
    'ps1': 'playstation',
    'psp': 'playstation portable',
    'saturn': 'sega saturn',
    'dreamcast': 'dreamcast',
    'dc': 'dreamcast',
    'neogeo': 'neo geo aes',
    'neo geo': 'neo geo aes',
    'neo-geo': 'neo geo aes',
    'gamecube': 'nintendo gamecube',
    'gc': 'nintendo gamecube',
    'amiga': 'amiga',
    'intellivision': 'intellivision',
}


def canonical_platform_name(folder: str) -> str:
    """Lower-case folder name with known aliases resolved."""
    key = ' '.join((folder or '').lower().replace('_', ' ').split())
    return PLATFORM_ALIASES.get(key, key)


class PlatformRegistry:
    """
    Lookup table from platform names to API platform ids.

    Built once at startup from the API's platform listing and passed to the
    components that need it.

    Example:
        registry = PlatformRegistry.from_records(await client.fetch_platforms())
        registry.lookup('snes')   # -> 19
    """

    def __init__(self, names: Optional[Dict[str, int]] = None):
        self._ids: Dict[str, int] = {}
        for name, platform_id in (names or {}).items():
            self.add(name, platform_id)

    @classmethod
    def from_records(cls, records: Iterable[Dict]) -> 'PlatformRegistry':
        """
        Build a registry from raw platform records.

        Args:
            records: Objects with ``id``, ``name`` and optional
                ``alternative_name``
        """
        registry = cls()
        for record in records:
            if not isinstance(record, dict) or not isinstance(record.get('id'), int):
                continue
            if record.get('name'):
                registry.add(record['name'], record['id'])
            if record.get('alternative_name'):
                registry.add(record['alternative_name'], record['id'])
        return registry

    def add(self, name: str, platform_id: int) -> None:
        self._ids[name.lower().strip()] = platform_id

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, name: str) -> bool:
        return name.lower().strip() in self._ids

    @property
    def names(self) -> List[str]:
        return sorted(self._ids)

    def lookup(self, folder: str) -> Optional[int]:
        """
        Resolve a console folder name to a platform id.

        Tries the alias table, then an exact name, then the longest known
        name contained in the folder name.

        Args:
            folder: Console folder name (e.g. 'snes', 'Sega Genesis')

        Returns:
            Platform id, or None when unknown
        """
        raw = ' '.join((folder or '').lower().replace('_', ' ').split())
        if not raw:
            return None

        for key in (canonical_platform_name(raw), raw):
            if key in self._ids:
                return self._ids[key]

        for name in sorted(self._ids, key=len, reverse=True):
            if len(name) >= 3 and name in raw:
                return self._ids[name]

        logger.debug(f"No platform id for folder '{folder}'")
        return None
