# =============================================================================
#  Cortana
#  Copyright (C) 2025 Cortana contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from common.errors import PersistFailure

logger = logging.getLogger("common.snapshot")


def write_snapshot(path: Path, data: Any) -> None:
    """
    Serialize ``data`` to ``path`` as one JSON document. The document is
    written beside the target and renamed over it, so readers never see a
    truncated file.
    """
    path = Path(path)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(
            json.dumps(data, indent=2, ensure_ascii=False, sort_keys=True),
            encoding="utf-8",
        )
        os.replace(tmp, path)
    except (OSError, TypeError, ValueError) as e:
        raise PersistFailure(path, str(e)) from e


def load_snapshot(path: Path, default: Any) -> Any:
    """
    Read a snapshot, initializing it with ``default`` when the file does not
    exist yet. A file that exists but cannot be parsed is an error, not an
    empty snapshot.
    """
    path = Path(path)
    if not path.exists():
        logger.info("[💾] Creating empty snapshot %s", path)
        write_snapshot(path, default)
        return json.loads(json.dumps(default))

    data = json.loads(path.read_text("utf-8"))
    if not isinstance(data, type(default)):
        raise ValueError(
            f"{path} holds a {type(data).__name__}, expected {type(default).__name__}"
        )
    return data
