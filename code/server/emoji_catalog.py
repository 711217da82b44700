# =============================================================================
#  Cortana
#  Copyright (C) 2025 Cortana contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional
import asyncio
import contextlib
import logging

from common.errors import DownloadFailure, PersistFailure
from common.snapshot import load_snapshot, write_snapshot
from common.store import public_uri, safe_filename
from server.fetcher import extension_from_uri

logger = logging.getLogger("server.emoji_catalog")

DEFAULT_EXTENSION = ".png"


@dataclass(frozen=True)
class EmojiRecord:
    name: str
    local_uri: str
    source_uri: str = ""
    filename: str = ""

    @property
    def animated(self) -> bool:
        return self.filename.lower().endswith(".gif")

    def to_json(self) -> dict:
        return {
            "localUrl": self.local_uri,
            "discordUrl": self.source_uri,
            "file": self.filename,
        }

    @classmethod
    def from_json(cls, name: str, raw: dict) -> "EmojiRecord":
        local_uri = str(raw.get("localUrl") or "")
        filename = str(raw.get("file") or "") or local_uri.rsplit("/", 1)[-1]
        return cls(
            name=name,
            local_uri=local_uri,
            source_uri=str(raw.get("discordUrl") or ""),
            filename=filename,
        )


class EmojiCatalog:
    """
    Locally hosted copy of the canonical emoji set. ``capture`` replaces the
    whole catalog or nothing.
    """

    def __init__(
        self,
        path: Path,
        fetcher,
        *,
        static_dir: Path,
        public_base_url: str,
        subdir: str = "emoji",
    ):
        self.path = Path(path)
        self.fetcher = fetcher
        self.static_dir = Path(static_dir)
        self.public_base_url = public_base_url.rstrip("/")
        self.subdir = subdir
        self._records: dict[str, EmojiRecord] = {}
        self._lock = asyncio.Lock()

    @property
    def directory(self) -> Path:
        return self.static_dir / self.subdir

    def load(self) -> None:
        raw = load_snapshot(self.path, {})
        self._records = {
            name: EmojiRecord.from_json(name, entry or {})
            for name, entry in raw.items()
        }
        logger.info("[😊] Loaded %d catalog emojis from %s", len(self._records), self.path)

    def snapshot(self) -> list[EmojiRecord]:
        return [self._records[n] for n in sorted(self._records)]

    def get(self, name: str) -> Optional[EmojiRecord]:
        return self._records.get(name)

    def __len__(self) -> int:
        return len(self._records)

    def read_bytes(self, record: EmojiRecord) -> bytes:
        return (self.directory / record.filename).read_bytes()

    async def _fetch_one(self, name: str, uri: str) -> tuple[str, str, str, bytes]:
        ext = extension_from_uri(uri)
        if not ext:
            ext = await self.fetcher.probe_image(uri) or DEFAULT_EXTENSION
        data = await self.fetcher.download(uri)
        return name, uri, f"{safe_filename(name)}{ext}", data

    async def capture(self, sources: Iterable[tuple[str, str]]) -> list[EmojiRecord]:
        """
        Download every (name, remote_uri) and make the result the new catalog.
        All downloads are joined before anything is written; if one fails
        the previous catalog, in memory and on disk, is left as it was.
        """
        unique: dict[str, str] = {}
        for name, uri in sources:
            if name in unique:
                logger.warning("[⚠️] Duplicate emoji name %s; keeping the first", name)
                continue
            unique[name] = uri

        async with self._lock:
            results = await asyncio.gather(
                *(self._fetch_one(n, u) for n, u in unique.items()),
                return_exceptions=True,
            )

            failures = [r for r in results if isinstance(r, BaseException)]
            if failures:
                for f in failures:
                    logger.error("[⛔] Emoji capture download failed: %s", f)
                first = failures[0]
                if isinstance(first, DownloadFailure):
                    raise first
                raise DownloadFailure("<capture>", str(first)) from first

            self.directory.mkdir(parents=True, exist_ok=True)
            records: dict[str, EmojiRecord] = {}
            for name, uri, filename, data in results:
                dest = self.directory / filename
                tmp = dest.with_suffix(dest.suffix + ".part")
                try:
                    tmp.write_bytes(data)
                except OSError as e:
                    self._discard_parts()
                    raise PersistFailure(dest, str(e)) from e
                records[name] = EmojiRecord(
                    name=name,
                    local_uri=public_uri(self.public_base_url, self.subdir, filename),
                    source_uri=uri,
                    filename=filename,
                )

            snapshot = {n: r.to_json() for n, r in records.items()}
            try:
                write_snapshot(self.path, snapshot)
            except PersistFailure:
                self._discard_parts()
                raise

            try:
                for record in records.values():
                    part = self.directory / (record.filename + ".part")
                    part.replace(self.directory / record.filename)
            except OSError as e:
                self._discard_parts()
                write_snapshot(
                    self.path, {n: r.to_json() for n, r in self._records.items()}
                )
                raise PersistFailure(self.directory, str(e)) from e

            stale = {r.filename for r in self._records.values()} - {
                r.filename for r in records.values()
            }
            for filename in stale:
                with contextlib.suppress(FileNotFoundError):
                    (self.directory / filename).unlink()

            self._records = records
            logger.info("[😊] Captured %d emojis into the catalog", len(records))
            return self.snapshot()

    def _discard_parts(self) -> None:
        for part in self.directory.glob("*.part"):
            with contextlib.suppress(FileNotFoundError):
                part.unlink()
