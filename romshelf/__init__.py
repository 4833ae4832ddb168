"""
romshelf - ROM library cataloger

Scans local ROM folders, matches each file against a remote game-metadata
API and keeps an enriched, resumable per-console library on disk.
"""

__version__ = "0.3.0"
