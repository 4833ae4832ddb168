"""
Library persistence.

One file per console holds that console's records sorted by title, in
JSON, XML or CSV. Alongside them ``unmatched.json`` keeps the rejection
log and ``consoles_index.json`` lists console, file and record count.
"""

import csv
import io
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from lxml import etree

from romshelf.library.records import (
    LIST_FIELDS,
    RECORD_FIELDS,
    LibraryRecord,
    UnmatchedRecord,
)
from romshelf.scanner.folder_mapper import MAPPINGS_FILENAME

logger = logging.getLogger(__name__)

UNMATCHED_FILENAME = 'unmatched.json'
INDEX_FILENAME = 'consoles_index.json'
SUPPORTED_FORMATS = ('json', 'xml', 'csv')
RESERVED_FILENAMES = {UNMATCHED_FILENAME, INDEX_FILENAME, MAPPINGS_FILENAME, 'cores.json'}

XML_ROOT = 'Games'
XML_GAME = 'Game'
XML_ITEM = 'Item'
XML_ILLEGAL_CHARS = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]')


class OutputNotWritableError(Exception):
    """Output directory cannot be created or written to."""
    pass


def sanitize_filename(name: str) -> str:
    """
    Make a console or title usable as a file or directory name.

    Example:
        >>> sanitize_filename('Sega Mega Drive/Genesis')
        'Sega Mega Drive - Genesis'
    """
    sanitized = re.sub(r'[<>:"\\|?*]+', '', name).strip()
    sanitized = sanitized.replace('/', ' - ')
    sanitized = re.sub(r'\s+', ' ', sanitized)
    return sanitized.rstrip('. ')


def _xml_safe(value: Any) -> str:
    """Text with the characters XML 1.0 cannot represent removed."""
    return XML_ILLEGAL_CHARS.sub('', str(value))


def _atomic_write(path: Path, content: str) -> None:
    temp_path = path.with_name(path.name + '.tmp')
    with open(temp_path, 'w', encoding='utf-8', newline='') as f:
        f.write(content)
    temp_path.replace(path)


class LibraryStore:
    """
    Reads and writes the library in an output directory.

    Features:
    - Loads every supported format regardless of the configured one
    - Corrupt or partial files are logged and skipped
    - Atomic writes (temp file + replace)

    Example:
        store = LibraryStore(Path('./data'), fmt='json')
        store.ensure_writable()
        records, unmatched = store.load()
        ...
        store.save(records, unmatched)
    """

    def __init__(self, output_dir: Path, fmt: str = 'json'):
        """
        Initialize library store.

        Args:
            output_dir: Directory holding the library files
            fmt: Output format for saves ('json', 'xml' or 'csv')
        """
        if fmt not in SUPPORTED_FORMATS:
            raise ValueError(f"Unsupported output format: {fmt}")
        self.output_dir = Path(output_dir)
        self.fmt = fmt
        self.saves = 0

    @property
    def unmatched_path(self) -> Path:
        return self.output_dir / UNMATCHED_FILENAME

    @property
    def index_path(self) -> Path:
        return self.output_dir / INDEX_FILENAME

    def console_path(self, platform_key: str) -> Path:
        return self.output_dir / f"{sanitize_filename(platform_key)}.{self.fmt}"

    def ensure_writable(self) -> None:
        """
        Create the output directory and probe that files can be written.

        Raises:
            OutputNotWritableError: If the directory is not usable
        """
        probe = self.output_dir / '.write_probe'
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            probe.write_text('ok', encoding='utf-8')
            probe.unlink()
        except OSError as e:
            raise OutputNotWritableError(f"Output directory {self.output_dir} is not writable: {e}") from e

    # Loading

    def load(self) -> Tuple[Dict[str, LibraryRecord], List[UnmatchedRecord]]:
        """
        Load existing records and the rejection log.

        Returns:
            Tuple of (records by key, unmatched records)
        """
        records: Dict[str, LibraryRecord] = {}
        if self.output_dir.is_dir():
            for path in sorted(self.output_dir.iterdir()):
                if not path.is_file() or path.name.lower() in RESERVED_FILENAMES:
                    continue
                suffix = path.suffix.lower().lstrip('.')
                if suffix not in SUPPORTED_FORMATS:
                    continue
                for record in self._load_file(path, suffix):
                    existing = records.get(record.key)
                    if existing is None:
                        records[record.key] = record
                    else:
                        for rom_path in record.rom_paths:
                            existing.add_rom(rom_path)

        unmatched = self.load_unmatched()
        logger.info(f"Loaded {len(records)} existing records and {len(unmatched)} unmatched entries")
        return records, unmatched

    def _load_file(self, path: Path, fmt: str) -> List[LibraryRecord]:
        try:
            if fmt == 'json':
                rows = self._read_json_rows(path)
            elif fmt == 'xml':
                rows = self._read_xml_rows(path)
            else:
                rows = self._read_csv_rows(path)
        except (OSError, ValueError, etree.XMLSyntaxError, csv.Error) as e:
            logger.warning(f"Skipping unreadable library file {path.name}: {e}")
            return []

        loaded = []
        for row in rows:
            record = LibraryRecord.from_dict(row) if isinstance(row, dict) else None
            if record is None:
                logger.debug(f"Skipping incomplete record in {path.name}")
                continue
            loaded.append(record)
        return loaded

    def _read_json_rows(self, path: Path) -> List[Any]:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict) or not isinstance(data.get('Games', []), list):
            raise ValueError("expected an object with a 'Games' list")
        return data.get('Games', [])

    def _read_xml_rows(self, path: Path) -> List[Dict[str, Any]]:
        tree = etree.parse(str(path))
        root = tree.getroot()
        if root.tag != XML_ROOT:
            raise ValueError(f"unexpected root element <{root.tag}>")

        list_names = {RECORD_FIELDS[attr] for attr in LIST_FIELDS}
        rows = []
        for game in root.findall(XML_GAME):
            row: Dict[str, Any] = {}
            for child in game:
                if not isinstance(child.tag, str):
                    continue
                if child.tag in list_names:
                    row[child.tag] = [item.text or '' for item in child.findall(XML_ITEM)]
                elif child.text is not None:
                    row[child.tag] = child.text
            rows.append(row)
        return rows

    def _read_csv_rows(self, path: Path) -> List[Dict[str, Any]]:
        list_names = {RECORD_FIELDS[attr] for attr in LIST_FIELDS}
        with open(path, 'r', encoding='utf-8', newline='') as f:
            rows = list(csv.DictReader(f))

        for row in rows:
            for name in list_names:
                cell = row.get(name)
                if cell:
                    row[name] = json.loads(cell)
                elif name in row:
                    row[name] = []
        return rows

    def load_unmatched(self) -> List[UnmatchedRecord]:
        """Read the rejection log; a missing or corrupt file yields []."""
        if not self.unmatched_path.exists():
            return []
        try:
            with open(self.unmatched_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Skipping unreadable {UNMATCHED_FILENAME}: {e}")
            return []
        if not isinstance(data, list):
            logger.warning(f"{UNMATCHED_FILENAME} is not a list, ignoring it")
            return []
        return [r for r in (UnmatchedRecord.from_dict(item) for item in data) if r is not None]

    # Saving

    def save(
        self,
        records: Iterable[LibraryRecord],
        unmatched: Iterable[UnmatchedRecord]
    ) -> None:
        """
        Write every console file, the rejection log and the index.

        Safe to call with partially filled state; each file is replaced
        atomically.

        Raises:
            OSError: If a file cannot be written
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)

        by_console: Dict[str, List[LibraryRecord]] = {}
        for record in records:
            by_console.setdefault(record.platform_key, []).append(record)

        index = []
        for platform_key in sorted(by_console, key=str.lower):
            console_records = sorted(by_console[platform_key], key=lambda r: r.title.lower())
            path = self.console_path(platform_key)
            _atomic_write(path, self._serialize(console_records))
            index.append({'console': platform_key, 'file': path.name, 'count': len(console_records)})

        _atomic_write(
            self.unmatched_path,
            json.dumps([u.to_dict() for u in unmatched], indent=2, ensure_ascii=False)
        )
        _atomic_write(self.index_path, json.dumps({'consoles': index}, indent=2, ensure_ascii=False))

        self.saves += 1
        logger.debug(f"Saved {sum(i['count'] for i in index)} records across {len(index)} consoles")

    def _serialize(self, records: List[LibraryRecord]) -> str:
        if self.fmt == 'json':
            return json.dumps({'Games': [r.to_dict() for r in records]}, indent=2, ensure_ascii=False)
        if self.fmt == 'xml':
            return self._serialize_xml(records)
        return self._serialize_csv(records)

    def _serialize_xml(self, records: List[LibraryRecord]) -> str:
        root = etree.Element(XML_ROOT)
        for record in records:
            game = etree.SubElement(root, XML_GAME)
            for name, value in record.to_dict().items():
                elem = etree.SubElement(game, name)
                if isinstance(value, list):
                    for item in value:
                        etree.SubElement(elem, XML_ITEM).text = _xml_safe(item)
                elif isinstance(value, bool):
                    elem.text = 'true' if value else 'false'
                elif value is not None:
                    elem.text = _xml_safe(value)

        return etree.tostring(
            root,
            encoding='utf-8',
            xml_declaration=True,
            pretty_print=True
        ).decode('utf-8')

    def _serialize_csv(self, records: List[LibraryRecord]) -> str:
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=list(RECORD_FIELDS.values()))
        writer.writeheader()
        for record in records:
            row: Dict[str, Optional[str]] = {}
            for name, value in record.to_dict().items():
                if isinstance(value, list):
                    row[name] = json.dumps(value, ensure_ascii=False)
                elif isinstance(value, bool):
                    row[name] = 'true' if value else 'false'
                elif value is None:
                    row[name] = ''
                else:
                    row[name] = str(value)
            writer.writerow(row)
        return buffer.getvalue()
