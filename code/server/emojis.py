# =============================================================================
#  Cortana
#  Copyright (C) 2025 Cortana contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Awaitable, Iterable, Optional
import asyncio, io, time, uuid
import discord, logging
from PIL import Image, ImageSequence
from common.errors import AlreadyRunning, PersistFailure, RemoteOperationFailure
from server.emoji_catalog import EmojiCatalog, EmojiRecord
from server.targets import Target
from server import logctx

logger = logging.getLogger("server.emojis")

EMOJI_MAX_BYTES = 262_144


@dataclass
class TargetResult:
    target: Target
    ok: bool
    reason: Optional[str] = None
    deleted: int = 0
    created: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.target.id,
            "name": self.target.name,
            "ok": self.ok,
            "reason": self.reason,
            "deleted": self.deleted,
            "created": self.created,
        }


@dataclass
class RunReport:
    run_id: str
    started_at: float
    finished_at: float = 0.0
    results: dict[int, TargetResult] = field(default_factory=dict)

    @property
    def succeeded(self) -> list[TargetResult]:
        return [r for r in self.results.values() if r.ok]

    @property
    def failed(self) -> list[TargetResult]:
        return [r for r in self.results.values() if not r.ok]

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "succeeded": [r.to_dict() for r in self.succeeded],
            "failed": [r.to_dict() for r in self.failed],
        }


class SyncStatus:
    """
    Single-flight flag shared by emoji capture and sync. ``try_begin`` never
    awaits, so on one event loop the test and the set cannot interleave
    with another caller.
    """

    def __init__(self):
        self._running = False
        self._operation: Optional[str] = None
        self._run_id: Optional[str] = None
        self._started_at: Optional[float] = None
        self._last_report: Optional[RunReport] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def last_report(self) -> Optional[RunReport]:
        return self._last_report

    def try_begin(self, operation: str, run_id: str) -> bool:
        if self._running:
            return False
        self._running = True
        self._operation = operation
        self._run_id = run_id
        self._started_at = time.time()
        return True

    def end(self, report: Optional[RunReport] = None) -> None:
        self._running = False
        self._operation = None
        self._run_id = None
        self._started_at = None
        if report is not None:
            self._last_report = report

    def view(self) -> "SyncStatusView":
        return SyncStatusView(self)

    def snapshot(self) -> dict:
        return {
            "running": self._running,
            "operation": self._operation,
            "run_id": self._run_id,
            "started_at": self._started_at,
            "last_report": self._last_report.to_dict() if self._last_report else None,
        }


class SyncStatusView:
    """Read-only projection of a SyncStatus for diagnostics."""

    __slots__ = ("_status",)

    def __init__(self, status: SyncStatus):
        self._status = status

    @property
    def running(self) -> bool:
        return self._status.running

    def snapshot(self) -> dict:
        return self._status.snapshot()


class EmojiReplicator:
    def __init__(
        self,
        platform,
        catalog: EmojiCatalog,
        *,
        timeout_seconds: float = 30.0,
    ):
        self.platform = platform
        self.catalog = catalog
        self.timeout_seconds = float(timeout_seconds)
        self.status = SyncStatus()

    def _log(self, level: str, msg: str, *args):
        """
        Emit a log line with the current run/guild prefix injected.
        Example final line:
        [k3f9a2][Guild B] [😊] Created emoji party_parrot
        """
        prefix = logctx.format_prefix()
        full = prefix + msg

        if level == "debug":
            logger.debug(full, *args)
        elif level == "info":
            logger.info(full, *args)
        elif level == "warning":
            logger.warning(full, *args)
        elif level == "error":
            logger.error(full, *args)
        elif level == "exception":
            logger.exception(full, *args)
        else:
            logger.log(logging.INFO, full, *args)

    async def capture(self, sources: Iterable[tuple[str, str]]) -> list[EmojiRecord]:
        """
        Replace the catalog from ``sources``. Shares the sync guard, so a
        capture never swaps the catalog under a running sync.
        """
        run_id = uuid.uuid4().hex[:6]
        if not self.status.try_begin("capture", run_id):
            raise AlreadyRunning()
        token = logctx.sync_run_id.set(run_id)
        try:
            records = await self.catalog.capture(sources)
            self._log("info", "[😊] Catalog now holds %d emojis", len(records))
            return records
        finally:
            logctx.sync_run_id.reset(token)
            self.status.end()

    async def replicate(self, targets: Iterable[Target]) -> RunReport:
        """
        Clear and recreate the catalog's emojis on every target at once.
        Per-target failures land in the report; only a busy guard or an
        unreadable catalog fails the call.
        """
        run_id = uuid.uuid4().hex[:6]
        if not self.status.try_begin("sync", run_id):
            self._log("debug", "[😊] Emoji sync already running; rejecting request.")
            raise AlreadyRunning()

        token = logctx.sync_run_id.set(run_id)
        report = RunReport(run_id=run_id, started_at=time.time())
        try:
            targets = list(targets)
            payloads = await self._load_payloads(self.catalog.snapshot())
            self._log(
                "info",
                "[😊] Emoji sync started: %d emojis onto %d guilds",
                len(payloads),
                len(targets),
            )

            results = await asyncio.gather(
                *(self._run_target(t, payloads) for t in targets)
            )
            for r in results:
                report.results[r.target.id] = r

            report.finished_at = time.time()
            if report.failed:
                self._log(
                    "warning",
                    "[⚠️] Emoji sync finished with %d failed guild(s): %s",
                    len(report.failed),
                    ", ".join(r.target.name for r in report.failed),
                )
            else:
                self._log("info", "[😊] Emoji sync complete on %d guild(s)", len(report.succeeded))
            return report
        finally:
            logctx.sync_run_id.reset(token)
            self.status.end(report if report.finished_at else None)

    async def _load_payloads(self, records: list[EmojiRecord]) -> list[tuple[str, bytes]]:
        payloads = []
        for record in records:
            try:
                raw = self.catalog.read_bytes(record)
            except OSError as e:
                raise PersistFailure(self.catalog.directory / record.filename, str(e)) from e

            if len(raw) > EMOJI_MAX_BYTES:
                try:
                    if record.animated:
                        raw = await self._shrink_animated(raw, max_bytes=EMOJI_MAX_BYTES)
                    else:
                        raw = await self._shrink_static(raw, max_bytes=EMOJI_MAX_BYTES)
                except Exception as e:
                    self._log(
                        "error",
                        "[⛔] Error shrinking emoji %s: %s",
                        record.name,
                        e,
                    )
            payloads.append((record.name, raw))
        return payloads

    async def _run_target(self, target: Target, payloads: list[tuple[str, bytes]]) -> TargetResult:
        logctx.target_name.set(target.name)
        result = TargetResult(target=target, ok=False)
        try:
            result.deleted = await self._clear(target)
            result.created = await self._populate(target, payloads)
            result.ok = True
            self._log(
                "info",
                "[😊] Deleted %d and created %d emojis",
                result.deleted,
                result.created,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            result.reason = str(e) or e.__class__.__name__
            self._log("error", "[⛔] Emoji sync failed: %s", result.reason)
        return result

    async def _call(self, target: Target, phase: str, aw: Awaitable):
        try:
            return await asyncio.wait_for(aw, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise RemoteOperationFailure(
                target, phase, f"timed out after {self.timeout_seconds:g}s"
            ) from e
        except discord.Forbidden as e:
            raise RemoteOperationFailure(target, phase, "missing permissions") from e
        except (discord.HTTPException, LookupError) as e:
            raise RemoteOperationFailure(target, phase, str(e)) from e

    async def _clear(self, target: Target) -> int:
        remote = await self._call(target, "list", self.platform.list_remote_resources(target))
        deleted = 0
        for emoji in remote:
            await self._call(
                target, "delete", self.platform.delete_remote_resource(target, emoji.id)
            )
            deleted += 1
            self._log("debug", "[😊] Deleted emoji %s", emoji.name)
        return deleted

    async def _populate(self, target: Target, payloads: list[tuple[str, bytes]]) -> int:
        created = 0
        for name, data in payloads:
            await self._call(
                target, "create", self.platform.create_remote_resource(target, data, name)
            )
            created += 1
            self._log("debug", "[😊] Created emoji %s", name)
        return created

    async def _shrink_static(self, data: bytes, max_bytes: int) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, self._sync_shrink_static, data, max_bytes
        )

    def _sync_shrink_static(self, data: bytes, max_bytes: int) -> bytes:
        img = Image.open(io.BytesIO(data)).convert("RGBA")
        img.thumbnail((128, 128), Image.LANCZOS)

        out = io.BytesIO()
        img.save(out, format="PNG", optimize=True)
        result = out.getvalue()
        if len(result) <= max_bytes:
            return result

        out = io.BytesIO()
        img.convert("P", palette=Image.ADAPTIVE).save(out, format="PNG", optimize=True)
        result = out.getvalue()
        return result if len(result) <= max_bytes else data

    async def _shrink_animated(self, data: bytes, max_bytes: int) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, self._sync_shrink_animated, data, max_bytes
        )

    def _sync_shrink_animated(self, data: bytes, max_bytes: int) -> bytes:
        img = Image.open(io.BytesIO(data))
        frames, durations = [], []
        for frame in ImageSequence.Iterator(img):
            f = frame.convert("RGBA")
            f.thumbnail((128, 128), Image.LANCZOS)
            frames.append(f)
            durations.append(frame.info.get("duration", 100))

        out = io.BytesIO()
        frames[0].save(
            out,
            format="GIF",
            save_all=True,
            append_images=frames[1:],
            duration=durations,
            loop=0,
            optimize=True,
        )
        result = out.getvalue()
        return result if len(result) <= max_bytes else data
