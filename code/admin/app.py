# =============================================================================
#  Cortana
#  Copyright (C) 2025 Cortana contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


from __future__ import annotations
import logging
from pathlib import Path

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles

from common.config import CURRENT_VERSION

LOGGER = logging.getLogger("admin")

APP_TITLE = "Cortana"

router = APIRouter()


@router.get("/health", response_class=PlainTextResponse)
async def health():
    return "ok"


@router.get("/api/version")
async def api_version():
    return {"version": CURRENT_VERSION}


@router.get("/api/sync/status", response_class=JSONResponse)
async def api_sync_status(request: Request):
    status = request.app.state.sync_status  # type: ignore[attr-defined]
    return JSONResponse(status.snapshot())


@router.get("/api/maps/url", response_class=JSONResponse)
async def api_url_map(request: Request):
    store = request.app.state.url_store  # type: ignore[attr-defined]
    return JSONResponse(dict(store.items()))


@router.get("/api/maps/emoji", response_class=JSONResponse)
async def api_emoji_map(request: Request):
    catalog = request.app.state.catalog  # type: ignore[attr-defined]
    return JSONResponse(
        [
            {"name": r.name, "localUrl": r.local_uri, "discordUrl": r.source_uri}
            for r in catalog.snapshot()
        ]
    )


def create_app(*, sync_status, url_store, catalog, static_dir: Path) -> FastAPI:
    """
    Build the diagnostics app. Materialized files under ``static_dir`` are
    served from the root, so PUBLIC_BASE_URL should point here.
    """
    app = FastAPI(title=APP_TITLE)
    app.state.sync_status = sync_status
    app.state.url_store = url_store
    app.state.catalog = catalog
    app.include_router(router)
    app.mount("/", StaticFiles(directory=str(static_dir)), name="static")
    LOGGER.debug("Admin app serving static files from %s", static_dir)
    return app
