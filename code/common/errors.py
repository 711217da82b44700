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
from typing import Any


class CortanaError(Exception):
    """Base exception for store, catalog and replication errors."""


@dataclass(frozen=True)
class AlreadyExists(CortanaError):
    """Raised by ``save`` when the key is already mapped."""

    key: str

    def __str__(self) -> str:
        return f"Key already exists: {self.key}"


@dataclass(frozen=True)
class NotFound(CortanaError):
    """Raised by ``update`` when the key is not mapped."""

    key: str

    def __str__(self) -> str:
        return f"Key not found: {self.key}"


class AlreadyRunning(CortanaError):
    """Raised when an emoji capture or sync is already in flight."""

    def __str__(self) -> str:
        return "An emoji sync is already running"


@dataclass(frozen=True)
class DownloadFailure(CortanaError):
    uri: str
    reason: str

    def __str__(self) -> str:
        return f"Download failed for {self.uri}: {self.reason}"


@dataclass(frozen=True)
class RemoteOperationFailure(CortanaError):
    """A create/delete/list call against one target failed or timed out."""

    target: Any
    phase: str
    reason: str

    def __str__(self) -> str:
        name = getattr(self.target, "name", self.target)
        return f"{self.phase} failed on {name}: {self.reason}"


@dataclass(frozen=True)
class PersistFailure(CortanaError):
    path: Path
    reason: str

    def __str__(self) -> str:
        return f"Could not write snapshot {self.path}: {self.reason}"
