from __future__ import annotations
import os
import sys
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Iterator, Optional

from pydantic import BaseModel, Field
from fastapi import FastAPI, APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, FileResponse
from starlette.responses import StreamingResponse

from camreview.config import load_config
from camreview.errors import ReviewError
from camreview.logs import configure_logging, log
from camreview.paths import content_type
from camreview.service import ReviewService

logger = logging.getLogger("camreview.app")


def api_success(data=None, message: str = "OK", status_code: int = 200):
    return JSONResponse({"status": "success", "message": message, "data": data}, status_code=status_code)


def api_error(message: str, status_code: int = 400, data=None):
    return JSONResponse({"status": "error", "message": message, "data": data}, status_code=status_code)


def raise_api_error(message: str, status_code: int = 400, data=None):
    raise HTTPException(status_code=status_code, detail={"status": "error", "message": message, "data": data})


class ActionRequest(BaseModel):  # type: ignore
    path: str
    action: str


class PathRequest(BaseModel):  # type: ignore
    path: str


class CaptionRequest(BaseModel):  # type: ignore
    path: str
    caption: str = ""


class DetectRequest(BaseModel):  # type: ignore
    path: str
    force: bool = False


class BatchRequest(BaseModel):  # type: ignore
    scope: str = Field("all")


def get_service(request: Request) -> ReviewService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise_api_error("service_unavailable", status_code=503)
    return service


def _serve_range(request: Request, file_path: Path, media_type: str):
    """Stream a file, honouring a single ``bytes=start-end`` Range header."""
    file_size = file_path.stat().st_size
    range_header = request.headers.get("range") or request.headers.get("Range")

    def file_chunk(start: int, end: int) -> Iterator[bytes]:
        with open(file_path, "rb") as f:
            f.seek(start)
            remaining = end - start + 1
            chunk = 1024 * 1024
            while remaining > 0:
                data = f.read(min(chunk, remaining))
                if not data:
                    break
                remaining -= len(data)
                yield data

    if range_header:
        try:
            unit, rng = range_header.split("=", 1)
            if unit.strip().lower() != "bytes":
                raise ValueError(unit)
            start_s, end_s = rng.split(",")[0].split("-", 1)
            if start_s:
                start = int(start_s)
                end = int(end_s) if end_s else file_size - 1
            else:
                # suffix range: last N bytes
                start = max(0, file_size - int(end_s))
                end = file_size - 1
            end = min(end, file_size - 1)
            if start > end or start < 0:
                raise ValueError(range_header)
        except ValueError:
            raise_api_error("invalid_range", status_code=416, data={"size": file_size})
        headers = {
            "Content-Range": f"bytes {start}-{end}/{file_size}",
            "Accept-Ranges": "bytes",
            "Content-Length": str(end - start + 1),
            "Content-Type": media_type,
        }
        return StreamingResponse(file_chunk(start, end), status_code=206, headers=headers)
    headers = {
        "Accept-Ranges": "bytes",
        "Content-Type": media_type,
        "Content-Length": str(file_size),
    }
    return StreamingResponse(file_chunk(0, file_size - 1), status_code=200, headers=headers)


api = APIRouter(prefix="/api")


@api.get("/health")
def health(service: ReviewService = Depends(get_service)):
    return api_success(service.health())


@api.get("/config")
def config_view(service: ReviewService = Depends(get_service)):
    return api_success(service.config.model_dump(mode="json", by_alias=True))


@api.get("/items")
async def list_items(service: ReviewService = Depends(get_service)):
    return api_success(await service.list_items())


@api.get("/library")
async def library(service: ReviewService = Depends(get_service)):
    return api_success(await service.library())


@api.post("/action")
async def apply_action(payload: ActionRequest, service: ReviewService = Depends(get_service)):
    result = await service.apply_action(payload.path, payload.action)
    return api_success(result.to_dict())


@api.post("/undo")
async def undo(service: ReviewService = Depends(get_service)):
    result = await service.undo()
    return api_success(result.to_dict())


@api.post("/caption")
async def set_caption(payload: CaptionRequest, service: ReviewService = Depends(get_service)):
    caption = await service.set_caption(payload.path, payload.caption)
    return api_success({"caption": caption})


@api.post("/caption/generate")
async def generate_caption(payload: PathRequest, service: ReviewService = Depends(get_service)):
    return api_success(await service.generate_caption(payload.path))


@api.post("/detect-critters")
async def detect_critters(payload: DetectRequest, service: ReviewService = Depends(get_service)):
    return api_success(await service.detect_critter(payload.path, force=payload.force))


@api.post("/detect-critters/batch-delete")
async def batch_delete(payload: Optional[BatchRequest] = None, service: ReviewService = Depends(get_service)):
    scope = payload.scope if payload else "all"
    job = service.start_batch(scope)
    log("batch", "started job %s (scope=%s)", job["id"], scope)
    return api_success({"job": job})


@api.get("/detect-critters/batch-delete/status")
def batch_status(service: ReviewService = Depends(get_service)):
    job = service.batch_status()
    if job is None:
        return api_success({"status": "idle"})
    return api_success({"status": job["status"], "job": job})


@api.post("/transcode")
async def transcode(payload: PathRequest, service: ReviewService = Depends(get_service)):
    return api_success(await service.transcode(payload.path))


@api.get("/preview-frames")
async def preview_frames(
    path: str = Query(...),
    generate: str = Query(default="0"),
    service: ReviewService = Depends(get_service),
):
    frames = await service.preview_frames(path, generate=generate.strip().lower() in {"1", "true", "yes"})
    return api_success({"frames": frames})


def media(request: Request, path: str = Query(...), service: ReviewService = Depends(get_service)):
    file_path = service.media_path(path)
    return _serve_range(request, file_path, content_type(file_path.name))


async def preview(path: str = Query(...), service: ReviewService = Depends(get_service)):
    file_path = await service.preview(path)
    return FileResponse(str(file_path), media_type=content_type(file_path.name))


async def review_error_handler(request: Request, exc: ReviewError):
    data = {"detail": str(exc)}
    if exc.data is not None:
        data["context"] = exc.data
    if exc.status_code >= 500:
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc)
    return api_error(exc.code, status_code=exc.status_code, data=data)


async def http_exception_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, dict) and exc.detail.get("status") == "error":
        payload = exc.detail
        return JSONResponse(payload, status_code=exc.status_code)
    return JSONResponse({"status": "error", "message": str(exc.detail)}, status_code=exc.status_code)


def create_app(service: Optional[ReviewService] = None) -> FastAPI:
    """Build the HTTP adapter. Without a service, one is built from config at startup."""

    @asynccontextmanager
    async def lifespan(app_obj: FastAPI):  # type: ignore[override]
        if getattr(app_obj.state, "service", None) is None:
            configure_logging()
            svc = ReviewService(load_config())
            svc.startup()
            app_obj.state.service = svc
            logger.info("[startup] MEDIA_ROOT=%s", svc.root)
        yield

    app_obj = FastAPI(title="CamReview", version="1.0", lifespan=lifespan)
    app_obj.state.service = service
    app_obj.add_exception_handler(ReviewError, review_error_handler)  # type: ignore[arg-type]
    app_obj.add_exception_handler(HTTPException, http_exception_handler)  # type: ignore[arg-type]
    app_obj.include_router(api)
    app_obj.add_api_route("/media", media, methods=["GET"])
    app_obj.add_api_route("/preview", preview, methods=["GET"])
    return app_obj


app = create_app()


if __name__ == "__main__":  # pragma: no cover
    try:
        import uvicorn  # type: ignore
    except ImportError:
        sys.stderr.write("[app] Missing dependency: uvicorn. Install with: pip install uvicorn\n")
        sys.exit(1)
    # Require an explicit opt-in to start the server when running this file directly
    run_flag = os.environ.get("RUN_SERVER") or os.environ.get("RUN_STANDALONE")
    if str(run_flag).strip().lower() not in {"1", "true", "yes", "y"}:
        sys.stderr.write(
            "[app] Not starting server. To run directly, set RUN_SERVER=1 (or RUN_STANDALONE=1).\n"
        )
        sys.exit(0)
    host = os.environ.get("HOST", "127.0.0.1")
    try:
        port = int(os.environ.get("PORT", "3000") or 3000)
    except ValueError:
        port = 3000
    uvicorn.run("app:app", host=host, port=port)
