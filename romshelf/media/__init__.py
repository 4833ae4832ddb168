"""
Media package for romshelf.

Downloads and validates cover art and screenshots for matched games.
"""

from .downloader import ImageDownloader, DownloadError
from .media_resolver import MediaResolver, cover_url, screenshot_url

__all__ = [
    "ImageDownloader",
    "DownloadError",
    "MediaResolver",
    "cover_url",
    "screenshot_url",
]
