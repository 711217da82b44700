# =============================================================================
#  Cortana
#  Copyright (C) 2025 Cortana contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
import os
import re
from pathlib import Path
from typing import Optional
from urllib.parse import quote, unquote

from common.errors import AlreadyExists, NotFound, PersistFailure
from common.snapshot import load_snapshot, write_snapshot

logger = logging.getLogger("common.store")

_UNSAFE_FILENAME = re.compile(r"[^\w.-]+", re.UNICODE)
_DIGEST_SUFFIX = re.compile(r"-[0-9a-f]{8}$")


def safe_filename(stem: str) -> str:
    """
    Filesystem-safe, deterministic file stem for a key or emoji name.
    Stems that had to be altered get a short digest of the original, so two
    distinct stems never share a file.
    """
    out = _UNSAFE_FILENAME.sub("_", stem).strip("._")
    if out == stem and not _DIGEST_SUFFIX.search(stem):
        return out
    digest = hashlib.sha1(stem.encode("utf-8")).hexdigest()[:8]
    return f"{out or '_'}-{digest}"


def public_uri(base_url: str, subdir: str, filename: str) -> str:
    return f"{base_url.rstrip('/')}/{subdir}/{quote(filename)}"


class MaterializedStore:
    """
    Persisted key -> URI mapping. Image URIs are downloaded on save/update
    and the stored value is rewritten to point at the local copy, served
    from ``public_base_url``.

    Every mutation holds ``self._lock`` from the key check until the
    snapshot is on disk.
    """

    def __init__(
        self,
        path: Path,
        fetcher,
        *,
        static_dir: Path,
        public_base_url: str,
        subdir: str = "url",
    ):
        self.path = Path(path)
        self.fetcher = fetcher
        self.static_dir = Path(static_dir)
        self.public_base_url = public_base_url.rstrip("/")
        self.subdir = subdir
        self._map: dict[str, str] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def normalize_key(key: str) -> str:
        k = str(key or "").strip().casefold()
        if not k:
            raise ValueError("key must not be empty")
        return k

    def load(self) -> None:
        raw = load_snapshot(self.path, {})
        self._map = {self.normalize_key(k): str(v) for k, v in raw.items()}
        logger.info("[💾] Loaded %d mappings from %s", len(self._map), self.path)

    def get(self, key: str) -> Optional[str]:
        try:
            return self._map.get(self.normalize_key(key))
        except ValueError:
            return None

    def items(self) -> list[tuple[str, str]]:
        return sorted(self._map.items())

    def __len__(self) -> int:
        return len(self._map)

    def __contains__(self, key) -> bool:
        return self.get(key) is not None

    async def save(self, key: str, value: str) -> str:
        k = self.normalize_key(key)
        async with self._lock:
            if k in self._map:
                raise AlreadyExists(k)

            self._map[k] = value
            try:
                final = await self._materialize(k, value)
            except Exception:
                self._map.pop(k, None)
                raise

            self._map[k] = final
            self._persist()
            logger.info("[➕] Saved %s -> %s", k, final)
            return final

    async def update(self, key: str, value: str) -> str:
        k = self.normalize_key(key)
        async with self._lock:
            if k not in self._map:
                raise NotFound(k)

            previous = self._map[k]
            self._map[k] = value
            try:
                final = await self._materialize(k, value)
            except Exception:
                self._map[k] = previous
                raise

            self._map[k] = final
            self._persist()
            if previous != final:
                self._remove_local_copy(previous, keep=final)
            logger.info("[✏️] Updated %s -> %s", k, final)
            return final

    async def delete(self, key: str) -> bool:
        """Remove ``key``. Returns False when it was not mapped."""
        k = self.normalize_key(key)
        async with self._lock:
            previous = self._map.pop(k, None)
            if previous is None:
                return False
            self._persist()
            self._remove_local_copy(previous)
            logger.info("[🗑️] Deleted %s", k)
            return True

    async def _materialize(self, key: str, value: str) -> str:
        ext = await self.fetcher.probe_image(value)
        if not ext:
            return value

        data = await self.fetcher.download(value)

        filename = f"{safe_filename(key)}{ext}"
        dest = self.static_dir / self.subdir / filename
        part = dest.with_suffix(dest.suffix + ".part")
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            part.write_bytes(data)
            os.replace(part, dest)
        except OSError as e:
            with contextlib.suppress(FileNotFoundError):
                part.unlink()
            raise PersistFailure(dest, str(e)) from e

        return public_uri(self.public_base_url, self.subdir, filename)

    def _local_path_for(self, value: str) -> Optional[Path]:
        prefix = f"{self.public_base_url}/{self.subdir}/"
        if not value.startswith(prefix):
            return None
        return self.static_dir / self.subdir / Path(unquote(value[len(prefix):])).name

    def _remove_local_copy(self, value: str, keep: Optional[str] = None) -> None:
        path = self._local_path_for(value)
        if path is None or (keep is not None and self._local_path_for(keep) == path):
            return
        with contextlib.suppress(FileNotFoundError):
            path.unlink()

    def _persist(self) -> None:
        write_snapshot(self.path, dict(self._map))
