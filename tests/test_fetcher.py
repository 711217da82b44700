from __future__ import annotations

import asyncio
import unittest

import aiohttp
from aiohttp import web
from aiohttp import test_utils

from common.errors import DownloadFailure
from server.fetcher import (
    ResourceFetcher,
    extension_for_content_type,
    extension_from_uri,
    is_web_uri,
)


class UriHelperTests(unittest.TestCase):
    def test_is_web_uri(self):
        self.assertTrue(is_web_uri("https://example.com/a.png"))
        self.assertTrue(is_web_uri(" http://example.com "))
        self.assertFalse(is_web_uri("ftp://example.com/a.png"))
        self.assertFalse(is_web_uri("example.com/a.png"))
        self.assertFalse(is_web_uri(""))

    def test_extension_from_uri_ignores_query(self):
        self.assertEqual(extension_from_uri("https://cdn.test/emojis/1.PNG?size=96"), ".png")
        self.assertEqual(extension_from_uri("https://cdn.test/emojis/1"), "")

    def test_extension_for_content_type(self):
        self.assertEqual(extension_for_content_type("image/jpeg; charset=binary"), ".jpg")
        self.assertEqual(extension_for_content_type("image/gif"), ".gif")
        self.assertIsNone(extension_for_content_type("text/html"))
        self.assertIsNone(extension_for_content_type(None))


async def _png(request):
    return web.Response(body=b"\x89PNG fake", content_type="image/png")


async def _html(request):
    return web.Response(text="<html></html>", content_type="text/html")


async def _slow(request):
    await asyncio.sleep(2)
    return web.Response(body=b"late", content_type="image/png")


async def _empty(request):
    return web.Response(body=b"", content_type="image/png")


class ResourceFetcherTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        app = web.Application()
        app.router.add_get("/cat.png", _png)
        app.router.add_get("/page", _html)
        app.router.add_get("/slow", _slow)
        app.router.add_get("/empty", _empty)
        self.server = test_utils.TestServer(app)
        await self.server.start_server()
        self.session = aiohttp.ClientSession()
        self.fetcher = ResourceFetcher(self.session, timeout_seconds=0.5)

    async def asyncTearDown(self):
        await self.session.close()
        await self.server.close()

    def url(self, path: str) -> str:
        return str(self.server.make_url(path))

    async def test_probe_detects_images(self):
        self.assertEqual(await self.fetcher.probe_image(self.url("/cat.png")), ".png")
        self.assertIsNone(await self.fetcher.probe_image(self.url("/page")))
        self.assertIsNone(await self.fetcher.probe_image(self.url("/missing")))
        self.assertIsNone(await self.fetcher.probe_image("not a url"))

    async def test_download_returns_bytes(self):
        self.assertEqual(await self.fetcher.download(self.url("/cat.png")), b"\x89PNG fake")

    async def test_download_errors_are_download_failures(self):
        with self.assertRaises(DownloadFailure) as cm:
            await self.fetcher.download(self.url("/missing"))
        self.assertIn("404", cm.exception.reason)

        with self.assertRaises(DownloadFailure) as cm:
            await self.fetcher.download(self.url("/slow"))
        self.assertEqual(cm.exception.reason, "timed out")

        with self.assertRaises(DownloadFailure):
            await self.fetcher.download(self.url("/empty"))


if __name__ == "__main__":
    unittest.main()
