"""
Image downloader with validation.

Downloads images with a small retry budget and validates them using Pillow
before they are moved into place.
"""

import asyncio
import logging
from io import BytesIO
from pathlib import Path
from typing import Optional, Tuple

import httpx
from PIL import Image

logger = logging.getLogger(__name__)


class DownloadError(Exception):
    """Base exception for download errors."""
    pass


class ImageDownloader:
    """
    Downloads and validates image files.

    Features:
    - HTTP download with configurable timeout
    - Retry logic with exponential backoff
    - Image validation with Pillow
    - Temp file + rename so a partial image never lands at the final path
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        timeout: float = 30,
        max_retries: int = 2,
        min_width: int = 1,
        min_height: int = 1
    ):
        """
        Initialize image downloader.

        Args:
            client: httpx.AsyncClient for HTTP requests
            timeout: HTTP request timeout in seconds
            max_retries: Maximum number of attempts
            min_width: Minimum acceptable image width in pixels
            min_height: Minimum acceptable image height in pixels
        """
        self.client = client
        self.timeout = timeout
        self.max_retries = max_retries
        self.min_width = min_width
        self.min_height = min_height
        self.downloaded = 0
        self.failed = 0

    async def download(self, url: str, output_path: Path) -> Tuple[bool, Optional[str]]:
        """
        Download an image from URL to output path.

        Args:
            url: Image URL to download
            output_path: Path where image should be saved

        Returns:
            Tuple of (success: bool, error_message: str or None)

        Example:
            success, error = await downloader.download(
                'https://images.igdb.com/igdb/image/upload/t_cover_big/co1xyz.jpg',
                Path('images/NES/Contra/cover.jpg')
            )
        """
        for attempt in range(self.max_retries):
            try:
                response = await self.client.get(url, timeout=self.timeout)
                response.raise_for_status()
            except httpx.HTTPError as e:
                if attempt == self.max_retries - 1:
                    self.failed += 1
                    return False, f"Download failed after {self.max_retries} attempts: {e}"
                await asyncio.sleep(2 ** attempt)
                continue

            image_data = response.content
            is_valid, validation_error = self.validate_image_data(image_data)
            if not is_valid:
                self.failed += 1
                return False, f"Validation failed: {validation_error}"

            temp_path = output_path.with_suffix(output_path.suffix + '.tmp')
            try:
                output_path.parent.mkdir(parents=True, exist_ok=True)
                with open(temp_path, 'wb') as f:
                    f.write(image_data)
                temp_path.replace(output_path)
            except OSError as e:
                if temp_path.exists():
                    temp_path.unlink()
                self.failed += 1
                return False, f"Could not write {output_path}: {e}"

            self.downloaded += 1
            return True, None

        self.failed += 1
        return False, "Download failed (max retries exceeded)"

    def validate_image_data(self, image_data: bytes) -> Tuple[bool, Optional[str]]:
        """
        Validate image data using Pillow.

        Checks:
        - Valid image format
        - Minimum dimensions

        Args:
            image_data: Raw image bytes

        Returns:
            Tuple of (is_valid: bool, error_message: str or None)
        """
        try:
            img = Image.open(BytesIO(image_data))
            img.verify()

            # verify() invalidates the image
            img = Image.open(BytesIO(image_data))
            width, height = img.size
        except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
            return False, f"Invalid image: {e}"

        if width < self.min_width or height < self.min_height:
            return False, (
                f"Image too small: {width}x{height} "
                f"(minimum: {self.min_width}x{self.min_height})"
            )
        return True, None
