"""
Cover and screenshot acquisition for library records.

In lazy mode records keep the remote image URLs; otherwise images are
downloaded under ``<images>/<console>/<title>/`` and records point at the
local files.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from romshelf.api.response_parser import CandidateResult
from romshelf.library.records import LibraryRecord
from romshelf.library.store import sanitize_filename
from romshelf.media.downloader import ImageDownloader

logger = logging.getLogger(__name__)

IMAGE_URL_TEMPLATE = "https://images.igdb.com/igdb/image/upload/{size}/{image_id}.jpg"
COVER_SIZE = "t_cover_big"
SCREENSHOT_SIZE = "t_screenshot_big"
MAX_SCREENSHOTS = 3


def cover_url(image_id: str) -> str:
    return IMAGE_URL_TEMPLATE.format(size=COVER_SIZE, image_id=image_id)


def screenshot_url(image_id: str) -> str:
    return IMAGE_URL_TEMPLATE.format(size=SCREENSHOT_SIZE, image_id=image_id)


class MediaResolver:
    """
    Fills ``cover_image`` and ``screenshots`` on a record.

    Existing files are reused without downloading. A failed download is
    logged and leaves the field empty; it never fails the entry.
    """

    def __init__(
        self,
        images_dir: Path,
        downloader: Optional[ImageDownloader] = None,
        lazy: bool = False,
        max_screenshots: int = MAX_SCREENSHOTS
    ):
        """
        Initialize media resolver.

        Args:
            images_dir: Root directory for downloaded images
            downloader: ImageDownloader, required unless lazy
            lazy: Store remote URLs instead of downloading
            max_screenshots: Screenshots kept per game
        """
        if downloader is None and not lazy:
            raise ValueError("An ImageDownloader is required unless lazy downloading is enabled")
        self.images_dir = Path(images_dir)
        self.downloader = downloader
        self.lazy = lazy
        self.max_screenshots = max_screenshots

    def game_dir(self, record: LibraryRecord) -> Path:
        return self.images_dir / sanitize_filename(record.platform_key) / sanitize_filename(record.title)

    def cover_path(self, record: LibraryRecord) -> Path:
        return self.game_dir(record) / "cover.jpg"

    def screenshot_path(self, record: LibraryRecord, index: int) -> Path:
        return self.game_dir(record) / "screenshots" / f"{index}.jpg"

    async def resolve(self, record: LibraryRecord, candidate: CandidateResult) -> LibraryRecord:
        """
        Attach media for a matched candidate to its record.

        Args:
            record: Record to update in place
            candidate: Matched candidate holding the image references

        Returns:
            The same record
        """
        screenshot_refs = candidate.screenshot_refs[:self.max_screenshots]

        if self.lazy:
            if candidate.cover_ref:
                record.cover_image = cover_url(candidate.cover_ref)
            record.screenshots = [screenshot_url(ref) for ref in screenshot_refs]
            return record

        jobs = []
        if candidate.cover_ref:
            jobs.append(self._fetch(record, cover_url(candidate.cover_ref), self.cover_path(record)))
        for index, ref in enumerate(screenshot_refs, start=1):
            jobs.append(self._fetch(record, screenshot_url(ref), self.screenshot_path(record, index)))

        results = await asyncio.gather(*jobs)
        paths: List[Optional[str]] = list(results)

        if candidate.cover_ref:
            record.cover_image = paths.pop(0) or ''
        record.screenshots = [p for p in paths if p]
        return record

    async def _fetch(self, record: LibraryRecord, url: str, path: Path) -> Optional[str]:
        if path.exists():
            return str(path)
        success, error = await self.downloader.download(url, path)
        if not success:
            logger.warning(
                f"Image download failed for '{record.title}' ({record.platform_key}): {error}"
            )
            return None
        return str(path)
