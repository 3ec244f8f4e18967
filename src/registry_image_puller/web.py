"""Thin HTTP surface over the pull pipeline.

Starts pulls in the background, reports their progress per session, and lists,
serves and deletes finished archives. There is no HTML UI and no login here;
put the app behind whatever gate the deployment uses.
"""

import asyncio
import logging
import uuid
from typing import Any

from aiohttp import web

from .core.progress import ProgressReporter, ProgressStore
from .core.types import ImageReference
from .downloads import (
    delete_downloaded_image,
    list_downloaded_images,
    resolve_download_path,
)
from .exceptions import RegistryError, ValidationError
from .pull import ImagePuller
from .settings import Settings

logger = logging.getLogger(__name__)

SESSION_COOKIE = "puller_session"

SETTINGS_KEY = web.AppKey("settings", Settings)
PROGRESS_KEY = web.AppKey("progress", ProgressStore)
RESULTS_KEY = web.AppKey("results", dict)
TASKS_KEY = web.AppKey("tasks", set)


def _session_key(request: web.Request) -> tuple[str, bool]:
    """Return the caller's session id and whether it was just created."""
    key = request.cookies.get(SESSION_COOKIE)
    if key:
        return key, False
    return uuid.uuid4().hex, True


def _with_session(response: web.StreamResponse, key: str, created: bool) -> web.StreamResponse:
    if created:
        response.set_cookie(SESSION_COOKIE, key, httponly=True, samesite="Lax")
    return response


async def _run_pull(app: web.Application, key: str, reference: ImageReference) -> None:
    settings = app[SETTINGS_KEY]
    reporter = ProgressReporter(app[PROGRESS_KEY], key)
    puller = ImagePuller(settings.registry, settings.download_dir, progress=reporter)
    try:
        result = await puller.pull(reference)
    except RegistryError as e:
        app[RESULTS_KEY][key] = {
            "ok": False,
            "message": f"Download of {reference.name}:{reference.tag} failed, see the log for details",
            "error": type(e).__name__,
        }
        return
    except Exception:
        logger.exception("Unexpected error while pulling %s", reference)
        app[RESULTS_KEY][key] = {
            "ok": False,
            "message": "Unexpected error, see the log for details",
        }
        return

    app[RESULTS_KEY][key] = {
        "ok": True,
        "message": f"Image downloaded: {result.output_path.name}",
        "file": result.output_path.name,
        "size": result.size,
    }


async def start_pull(request: web.Request) -> web.StreamResponse:
    key, created = _session_key(request)
    try:
        body: dict[str, Any] = await request.json()
    except ValueError:
        raise web.HTTPBadRequest(text="Request body must be JSON")
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="Request body must be a JSON object")

    settings = request.app[SETTINGS_KEY]
    for field in ("image", "tag", "architecture"):
        if body.get(field) is not None and not isinstance(body[field], str):
            raise web.HTTPBadRequest(text=f"{field} must be a string")
    try:
        reference = ImageReference.parse(
            body.get("image") or "",
            tag=body.get("tag") or None,
            architecture=body.get("architecture") or "amd64",
            namespace=settings.registry.default_namespace,
        )
    except ValidationError as e:
        raise web.HTTPBadRequest(text=str(e))

    store = request.app[PROGRESS_KEY]
    if key in store:
        raise web.HTTPConflict(text="A download is already running for this session")

    # Mark the session busy before the task gets scheduled
    ProgressReporter(store, key).start()
    request.app[RESULTS_KEY].pop(key, None)

    task = asyncio.create_task(_run_pull(request.app, key, reference))
    tasks = request.app[TASKS_KEY]
    tasks.add(task)
    task.add_done_callback(tasks.discard)

    response = web.json_response(
        {"image": reference.name, "tag": reference.tag, "architecture": reference.architecture},
        status=202,
    )
    return _with_session(response, key, created)


async def get_progress(request: web.Request) -> web.StreamResponse:
    key, created = _session_key(request)
    progress = request.app[PROGRESS_KEY].get(key)
    if not progress["active"] and key in request.app[RESULTS_KEY]:
        progress["result"] = request.app[RESULTS_KEY].pop(key)
    return _with_session(web.json_response(progress), key, created)


async def list_images(request: web.Request) -> web.Response:
    images = list_downloaded_images(request.app[SETTINGS_KEY].download_dir)
    return web.json_response([image.to_dict() for image in images])


async def download_image(request: web.Request) -> web.StreamResponse:
    try:
        path = resolve_download_path(
            request.app[SETTINGS_KEY].download_dir, request.match_info["name"]
        )
    except FileNotFoundError:
        raise web.HTTPNotFound(text="File not found")

    return web.FileResponse(
        path,
        headers={
            "Content-Type": "application/x-tar",
            "Content-Disposition": f'attachment; filename="{path.name}"',
            "Cache-Control": "no-cache, must-revalidate",
            "Pragma": "no-cache",
        },
    )


async def delete_image(request: web.Request) -> web.Response:
    try:
        delete_downloaded_image(
            request.app[SETTINGS_KEY].download_dir, request.match_info["name"]
        )
    except FileNotFoundError:
        raise web.HTTPNotFound(text="File not found")
    return web.Response(status=204)


async def show_log(request: web.Request) -> web.Response:
    log_file = request.app[SETTINGS_KEY].log_file
    if not log_file.is_file():
        return web.Response(text="No log file present.")
    return web.Response(text=log_file.read_text(encoding="utf-8", errors="replace"))


async def _cancel_pulls(app: web.Application) -> None:
    for task in list(app[TASKS_KEY]):
        task.cancel()
    await asyncio.gather(*app[TASKS_KEY], return_exceptions=True)


def create_app(settings: Settings, store: ProgressStore | None = None) -> web.Application:
    """Build the aiohttp application.

    Args:
        settings: Download directory, log file and registry settings
        store: Progress store to share with other components (new one if omitted)
    """
    app = web.Application()
    app[SETTINGS_KEY] = settings
    app[PROGRESS_KEY] = store or ProgressStore()
    app[RESULTS_KEY] = {}
    app[TASKS_KEY] = set()

    app.router.add_post("/pulls", start_pull)
    app.router.add_get("/progress", get_progress)
    app.router.add_get("/images", list_images)
    app.router.add_get("/images/{name}", download_image)
    app.router.add_delete("/images/{name}", delete_image)
    app.router.add_get("/log", show_log)
    app.on_shutdown.append(_cancel_pulls)
    return app
