# =============================================================================
#  Cortana
#  Copyright (C) 2025 Cortana contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
from typing import Optional
import asyncio
import logging
import mimetypes
import posixpath
from urllib.parse import urlparse

import aiohttp

from common.errors import DownloadFailure

logger = logging.getLogger("server.fetcher")

IMAGE_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/bmp": ".bmp",
}


def is_web_uri(value: str) -> bool:
    """True for absolute http(s) URIs with a host."""
    try:
        parsed = urlparse(str(value or "").strip())
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def extension_from_uri(uri: str) -> str:
    """
    File extension of the URI's path component, lower-cased, or "" when the
    path has none.
    """
    path = urlparse(uri).path
    return posixpath.splitext(path)[1].lower()


def extension_for_content_type(content_type: Optional[str]) -> Optional[str]:
    ctype = (content_type or "").split(";", 1)[0].strip().lower()
    if not ctype.startswith("image/"):
        return None
    return IMAGE_EXTENSIONS.get(ctype) or mimetypes.guess_extension(ctype) or ".img"


class ResourceFetcher:
    """
    Downloads remote resources over a shared aiohttp session and tells
    whether a URI points at an image.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        *,
        timeout_seconds: float = 30.0,
    ):
        self.session = session
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    def set_session(self, session: aiohttp.ClientSession | None):
        self.session = session

    def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
        return self.session

    async def close(self) -> None:
        if self.session is not None and not self.session.closed:
            await self.session.close()

    async def probe_image(self, uri: str) -> Optional[str]:
        """
        Return the file extension (".png", ".gif", ...) when ``uri`` serves
        image content, else None. Servers that reject HEAD get a GET whose
        body is never read.
        """
        if not is_web_uri(uri):
            return None

        session = self._get_session()
        try:
            async with session.head(
                uri, allow_redirects=True, timeout=self.timeout
            ) as resp:
                if resp.status < 400:
                    ext = extension_for_content_type(resp.headers.get("Content-Type"))
                    if ext:
                        return ext
                    if resp.headers.get("Content-Type"):
                        return None

            async with session.get(uri, timeout=self.timeout) as resp:
                if resp.status >= 400:
                    return None
                return extension_for_content_type(resp.headers.get("Content-Type"))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug("[🔎] Probe failed for %s: %s", uri, e)
            return None

    async def download(self, uri: str) -> bytes:
        session = self._get_session()
        try:
            async with session.get(uri, timeout=self.timeout) as resp:
                if resp.status >= 400:
                    raise DownloadFailure(uri, f"HTTP {resp.status}")
                data = await resp.read()
        except asyncio.TimeoutError as e:
            raise DownloadFailure(uri, "timed out") from e
        except aiohttp.ClientError as e:
            raise DownloadFailure(uri, str(e) or e.__class__.__name__) from e

        if not data:
            raise DownloadFailure(uri, "empty response")
        logger.debug("[⬇️] Downloaded %d bytes from %s", len(data), uri)
        return data
