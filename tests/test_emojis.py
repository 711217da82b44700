from __future__ import annotations

import asyncio
import io
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from PIL import Image

from common.errors import AlreadyRunning, PersistFailure
from server.emoji_catalog import EmojiCatalog
from server.emojis import EMOJI_MAX_BYTES, EmojiReplicator, SyncStatus
from server.targets import RemoteEmoji, Target

BASE = "http://files.test"

A = Target(id=1, name="Guild A")
B = Target(id=2, name="Guild B")


class _FakeFetcher:
    def __init__(self, blobs: dict[str, bytes]):
        self.blobs = blobs

    async def probe_image(self, uri: str):
        return None

    async def download(self, uri: str) -> bytes:
        await asyncio.sleep(0)
        return self.blobs[uri]


class _FakePlatform:
    """In-memory guild emoji sets with injectable failures and hangs."""

    def __init__(self, remote: dict[int, dict[int, str]]):
        self.remote = remote
        self._next_id = 1000
        self.fail: dict[tuple[int, str], Exception] = {}
        self.hang: set[tuple[int, str]] = set()
        self.calls: list[tuple[int, str]] = []
        self.payloads: dict[tuple[int, str], bytes] = {}

    async def _enter(self, target: Target, phase: str):
        self.calls.append((target.id, phase))
        await asyncio.sleep(0)
        if (target.id, phase) in self.hang:
            await asyncio.sleep(60)
        exc = self.fail.get((target.id, phase))
        if exc is not None:
            raise exc

    async def list_remote_resources(self, target: Target):
        await self._enter(target, "list")
        return [
            RemoteEmoji(id=i, name=n, url=f"https://cdn.test/{i}")
            for i, n in self.remote[target.id].items()
        ]

    async def delete_remote_resource(self, target: Target, emoji_id: int):
        await self._enter(target, "delete")
        del self.remote[target.id][emoji_id]

    async def create_remote_resource(self, target: Target, data: bytes, name: str):
        await self._enter(target, "create")
        self.payloads[(target.id, name)] = data
        self._next_id += 1
        self.remote[target.id][self._next_id] = name

    def names(self, target: Target) -> list[str]:
        return sorted(self.remote[target.id].values())


class EmojiReplicatorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        fetcher = _FakeFetcher(
            {
                "https://src.test/blob.png": b"blob",
                "https://src.test/party.gif": b"party",
                "https://src.test/wave.png": b"wave",
            }
        )
        self.catalog = EmojiCatalog(
            root / "maps" / "emoji.json",
            fetcher,
            static_dir=root / "static",
            public_base_url=BASE,
        )
        self.catalog.load()
        await self.catalog.capture(
            [
                ("blob", "https://src.test/blob.png"),
                ("party", "https://src.test/party.gif"),
                ("wave", "https://src.test/wave.png"),
            ]
        )
        self.platform = _FakePlatform(
            {
                A.id: {1: "old_a1", 2: "old_a2"},
                B.id: {3: "old_b"},
            }
        )
        self.engine = EmojiReplicator(self.platform, self.catalog, timeout_seconds=0.2)

    async def asyncTearDown(self):
        self._tmp.cleanup()

    async def test_replicate_clears_and_recreates_every_target(self):
        report = await self.engine.replicate({A, B})

        self.assertTrue(report.ok)
        self.assertEqual({r.target for r in report.succeeded}, {A, B})
        self.assertEqual(self.platform.names(A), ["blob", "party", "wave"])
        self.assertEqual(self.platform.names(B), ["blob", "party", "wave"])
        self.assertEqual(report.results[A.id].deleted, 2)
        self.assertEqual(report.results[A.id].created, 3)

    async def test_delete_before_create_within_a_target(self):
        await self.engine.replicate([A])
        phases = [p for gid, p in self.platform.calls if gid == A.id]
        last_delete = max(i for i, p in enumerate(phases) if p == "delete")
        first_create = min(i for i, p in enumerate(phases) if p == "create")
        self.assertLess(last_delete, first_create)

    async def test_failure_on_one_target_is_isolated(self):
        self.platform.fail[(B.id, "delete")] = RuntimeError("delete exploded")

        report = await self.engine.replicate({A, B})

        self.assertFalse(report.ok)
        self.assertEqual([r.target for r in report.succeeded], [A])
        self.assertEqual([r.target for r in report.failed], [B])
        self.assertIn("delete exploded", report.results[B.id].reason)
        self.assertEqual(self.platform.names(A), ["blob", "party", "wave"])
        self.assertEqual(self.platform.names(B), ["old_b"])

    async def test_hanging_remote_call_times_out_as_failure(self):
        self.platform.hang.add((A.id, "create"))

        report = await self.engine.replicate({A, B})

        self.assertEqual([r.target for r in report.failed], [A])
        self.assertIn("create", report.results[A.id].reason)
        self.assertIn("timed out", report.results[A.id].reason)
        self.assertTrue(report.results[B.id].ok)
        self.assertFalse(self.engine.status.running)

    async def test_lookup_error_is_reported_per_target(self):
        self.platform.fail[(A.id, "list")] = LookupError("guild 1 is not available")
        report = await self.engine.replicate([A])
        self.assertIn("not available", report.results[A.id].reason)

    async def test_concurrent_replicate_is_single_flight(self):
        results = await asyncio.gather(
            self.engine.replicate({A, B}),
            self.engine.replicate({A, B}),
            return_exceptions=True,
        )

        rejected = [r for r in results if isinstance(r, AlreadyRunning)]
        reports = [r for r in results if not isinstance(r, BaseException)]
        self.assertEqual(len(rejected), 1)
        self.assertEqual(len(reports), 1)
        self.assertEqual(sum(1 for _, p in self.platform.calls if p == "list"), 2)
        self.assertEqual(self.platform.names(A), ["blob", "party", "wave"])

    async def test_replicate_twice_converges(self):
        await self.engine.replicate([A])
        first = self.platform.names(A)
        report = await self.engine.replicate([A])
        self.assertTrue(report.ok)
        self.assertEqual(self.platform.names(A), first)
        self.assertEqual(report.results[A.id].deleted, 3)

    async def test_flag_resets_and_report_is_kept(self):
        self.assertFalse(self.engine.status.running)
        report = await self.engine.replicate([A])
        self.assertFalse(self.engine.status.running)
        self.assertIs(self.engine.status.last_report, report)
        snap = self.engine.status.snapshot()
        self.assertFalse(snap["running"])
        self.assertEqual(snap["last_report"]["run_id"], report.run_id)

    async def test_capture_is_rejected_while_sync_runs(self):
        self.platform.hang.add((A.id, "create"))
        sync = asyncio.create_task(self.engine.replicate([A]))
        await asyncio.sleep(0)
        self.assertTrue(self.engine.status.running)

        with self.assertRaises(AlreadyRunning):
            await self.engine.capture([("x", "https://src.test/blob.png")])

        await sync
        self.assertEqual(len(self.catalog), 3)

    async def test_no_targets_gives_empty_report(self):
        report = await self.engine.replicate([])
        self.assertTrue(report.ok)
        self.assertEqual(report.results, {})

    async def test_missing_catalog_file_is_a_hard_failure(self):
        (self.catalog.directory / "wave.png").unlink()
        with self.assertRaises(PersistFailure):
            await self.engine.replicate([A])
        self.assertFalse(self.engine.status.running)
        self.assertEqual(self.platform.calls, [])


def _noise_png(size: int) -> bytes:
    img = Image.frombytes("RGBA", (size, size), os.urandom(size * size * 4))
    out = io.BytesIO()
    img.save(out, format="PNG")
    return out.getvalue()


def _noise_gif(size: int, frames: int) -> bytes:
    images = [
        Image.frombytes("L", (size, size), os.urandom(size * size))
        for _ in range(frames)
    ]
    out = io.BytesIO()
    images[0].save(
        out, format="GIF", save_all=True, append_images=images[1:], duration=80, loop=0
    )
    return out.getvalue()


class OversizedEmojiTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.blobs = {
            "https://src.test/huge.png": _noise_png(600),
            "https://src.test/broken.png": b"\x00" * 300_000,
            "https://src.test/dance.gif": _noise_gif(300, 5),
        }
        for blob in self.blobs.values():
            self.assertGreater(len(blob), EMOJI_MAX_BYTES)

        self.catalog = EmojiCatalog(
            root / "maps" / "emoji.json",
            _FakeFetcher(self.blobs),
            static_dir=root / "static",
            public_base_url=BASE,
        )
        self.catalog.load()
        await self.catalog.capture(
            [
                ("huge", "https://src.test/huge.png"),
                ("broken", "https://src.test/broken.png"),
                ("dance", "https://src.test/dance.gif"),
            ]
        )
        self.platform = _FakePlatform({A.id: {}})
        self.engine = EmojiReplicator(self.platform, self.catalog, timeout_seconds=5)

    async def asyncTearDown(self):
        self._tmp.cleanup()

    async def test_large_png_is_shrunk_under_the_limit(self):
        report = await self.engine.replicate([A])
        self.assertTrue(report.ok)

        sent = self.platform.payloads[(A.id, "huge")]
        self.assertLessEqual(len(sent), EMOJI_MAX_BYTES)
        with Image.open(io.BytesIO(sent)) as img:
            self.assertEqual(img.format, "PNG")
            self.assertLessEqual(max(img.size), 128)

    async def test_unreadable_image_is_sent_as_is(self):
        with self.assertLogs("server.emojis", level="ERROR") as cm:
            report = await self.engine.replicate([A])

        self.assertTrue(report.ok)
        self.assertEqual(
            self.platform.payloads[(A.id, "broken")],
            self.blobs["https://src.test/broken.png"],
        )
        self.assertTrue(any("broken" in line for line in cm.output))

    async def test_animated_gif_keeps_its_frames(self):
        with mock.patch.object(
            self.engine,
            "_sync_shrink_animated",
            wraps=self.engine._sync_shrink_animated,
        ) as spy:
            await self.engine.replicate([A])

        spy.assert_called_once()
        sent = self.platform.payloads[(A.id, "dance")]
        self.assertLessEqual(len(sent), EMOJI_MAX_BYTES)
        self.assertTrue(sent.startswith(b"GIF8"))
        with Image.open(io.BytesIO(sent)) as img:
            self.assertGreater(img.n_frames, 1)


class SyncStatusTests(unittest.TestCase):
    def test_try_begin_is_exclusive(self):
        status = SyncStatus()
        self.assertTrue(status.try_begin("sync", "r1"))
        self.assertFalse(status.try_begin("capture", "r2"))
        self.assertEqual(status.snapshot()["run_id"], "r1")
        status.end()
        self.assertFalse(status.running)
        self.assertTrue(status.try_begin("capture", "r3"))


if __name__ == "__main__":
    unittest.main()
