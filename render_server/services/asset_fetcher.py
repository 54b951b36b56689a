"""Fetch media referenced by a composition into a job's scratch directory."""

import asyncio
import logging
import os
import shutil
from urllib.parse import unquote, urlparse

import httpx

from render_server.config import Settings, get_settings
from render_server.exceptions import AssetDownloadError

logger = logging.getLogger(__name__)


class AssetFetcher:
    """Plain URL-addressed byte retrieval.

    Supports http(s) URLs (streamed with httpx), ``file://`` URIs and local
    filesystem paths (copied).
    """

    CHUNK_SIZE = 64 * 1024

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self._transport = transport

    async def fetch(self, uri: str, local_path: str) -> str:
        """Copy the asset at ``uri`` to ``local_path``.

        Raises:
            AssetDownloadError: On any network, HTTP status or filesystem error
        """
        scheme = urlparse(uri).scheme.lower()
        if scheme in ("http", "https"):
            await self._download(uri, local_path)
        elif scheme == "file":
            await self._copy(unquote(urlparse(uri).path), local_path, uri)
        elif scheme == "" or len(scheme) == 1:  # plain path (or a Windows drive letter)
            await self._copy(uri, local_path, uri)
        else:
            raise AssetDownloadError(uri, f"unsupported scheme '{scheme}'")
        return local_path

    async def _download(self, url: str, local_path: str) -> None:
        logger.info(f"[ASSET] Downloading {url}")
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.asset_fetch_timeout_s,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", url) as response:
                    if response.status_code != 200:
                        raise AssetDownloadError(url, f"HTTP {response.status_code}")
                    with open(local_path, "wb") as f:
                        async for chunk in response.aiter_bytes(self.CHUNK_SIZE):
                            f.write(chunk)
        except AssetDownloadError:
            self._discard(local_path)
            raise
        except (httpx.HTTPError, OSError) as e:
            self._discard(local_path)
            raise AssetDownloadError(url, str(e) or e.__class__.__name__) from e

    async def _copy(self, source: str, local_path: str, uri: str) -> None:
        if not os.path.isfile(source):
            raise AssetDownloadError(uri, "file not found")
        try:
            await asyncio.to_thread(shutil.copyfile, source, local_path)
        except OSError as e:
            self._discard(local_path)
            raise AssetDownloadError(uri, str(e)) from e

    @staticmethod
    def _discard(path: str) -> None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
