"""
Library package for romshelf.

Holds the catalog record model and its per-console persistence.
"""

from .records import LibraryRecord, UnmatchedRecord, record_key, build_record, build_declined_record
from .store import LibraryStore, OutputNotWritableError, sanitize_filename

__all__ = [
    'LibraryRecord',
    'UnmatchedRecord',
    'record_key',
    'build_record',
    'build_declined_record',
    'LibraryStore',
    'OutputNotWritableError',
    'sanitize_filename',
]
