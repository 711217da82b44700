# =============================================================================
#  Cortana
#  Copyright (C) 2025 Cortana contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


import contextvars

sync_run_id = contextvars.ContextVar("sync_run_id", default=None)
target_name = contextvars.ContextVar("target_name", default=None)


def format_prefix() -> str:
    """
    Build a prefix like "[<run>][<guild>] " from whatever is set in the
    current task's context, or "" when nothing is.
    """
    run = sync_run_id.get()
    target = target_name.get()

    parts = []
    if run:
        parts.append(f"[{run}]")
    if target:
        parts.append(f"[{target}]")

    return "".join(parts) + " " if parts else ""
