# =============================================================================
#  Cortana
#  Copyright (C) 2025 Cortana contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import os
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)
CURRENT_VERSION = "v1.2.0"


def _parse_id_list(raw: Optional[str], log: logging.Logger = logger) -> list[int]:
    out: list[int] = []
    for tok in str(raw or "").split(","):
        tok = tok.strip()
        if tok:
            try:
                out.append(int(tok))
            except ValueError:
                log.warning("[⚠️] Ignoring non-numeric id %r", tok)
    return out


class Config:
    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = (logger or logging.getLogger(__name__)).getChild(
            self.__class__.__name__
        )

        def _str(key: str, env_default: Optional[str] = None) -> Optional[str]:
            v = os.getenv(key)
            if v is None or v.strip() == "":
                v = env_default
            return v

        def _int(key: str, env_default: str = "0") -> int:
            raw = _str(key, env_default)
            try:
                return int(str(raw).strip())
            except Exception:
                try:
                    return int(env_default)
                except Exception:
                    return 0

        def _float(key: str, env_default: str) -> float:
            raw = _str(key, env_default)
            try:
                value = float(str(raw).strip())
            except ValueError:
                value = float(env_default)
            return value if value > 0 else float(env_default)

        self.SERVER_TOKEN = _str("SERVER_TOKEN")

        self.DATA_DIR = Path(_str("DATA_DIR", "data"))
        self.MAPS_DIR = Path(_str("MAPS_DIR", str(self.DATA_DIR / "maps")))
        self.STATIC_DIR = Path(_str("STATIC_DIR", str(self.DATA_DIR / "static")))
        self.URL_MAP_PATH = self.MAPS_DIR / "url.json"
        self.EMOJI_MAP_PATH = self.MAPS_DIR / "emoji.json"
        self.CONVERSATION_MAP_PATH = self.MAPS_DIR / "conversation.json"

        self.ADMIN_HOST = _str("ADMIN_HOST", "0.0.0.0")
        self.ADMIN_PORT = _int("ADMIN_PORT", "8080")
        self.PUBLIC_BASE_URL = (
            _str("PUBLIC_BASE_URL", f"http://localhost:{self.ADMIN_PORT}") or ""
        ).rstrip("/")

        self.REMOTE_TIMEOUT_SECONDS = _float("REMOTE_TIMEOUT_SECONDS", "30")

        self.SOURCE_GUILD_ID = _int("SOURCE_GUILD_ID", "0") or None
        self.TARGET_GUILD_IDS = set(_parse_id_list(_str("TARGET_GUILD_IDS", ""), self.logger))
        self.COMMAND_USERS = _parse_id_list(_str("COMMAND_USERS", ""), self.logger)

    def ensure_dirs(self) -> None:
        """
        Create the snapshot and static directories. Raises OSError; callers
        treat that as fatal at startup.
        """
        self.MAPS_DIR.mkdir(parents=True, exist_ok=True)
        (self.STATIC_DIR / "url").mkdir(parents=True, exist_ok=True)
        (self.STATIC_DIR / "emoji").mkdir(parents=True, exist_ok=True)

    def is_command_user(self, user_id: int) -> bool:
        return not self.COMMAND_USERS or int(user_id) in self.COMMAND_USERS
