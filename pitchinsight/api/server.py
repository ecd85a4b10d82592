"""FastAPI app: function endpoints, video records and signed local media."""

import logging
import mimetypes
from typing import Any, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as RequestValidationError
from starlette.concurrency import run_in_threadpool

from pitchinsight.api.handlers import error_body, invoke_analysis, invoke_transcription
from pitchinsight.core.constants import (
    ALL_STATUSES, ALLOWED_MEDIA_FORMATS, APP_NAME, APP_VERSION,
)
from pitchinsight.core.object_store import LocalObjectStore
from pitchinsight.core.error_codes import AccessError, PersistenceError
from pitchinsight.core.pipeline import Pipeline
from pitchinsight.core.security_utils import verify_signature
from pitchinsight.core.services import Services, build_services

logger = logging.getLogger(__name__)


class InvocationRequest(BaseModel):
    """Body of both function endpoints; `videoId` is the legacy spelling."""
    model_config = ConfigDict(extra="ignore")

    video_id: Optional[str] = None
    videoId: Optional[str] = None


class VideoPage(BaseModel):
    items: list[dict[str, Any]]
    total: int
    page: int
    page_size: int


async def _read_invocation(request: Request) -> dict | JSONResponse:
    try:
        body = await request.json()
        parsed = InvocationRequest.model_validate(body)
    except (ValueError, RequestValidationError) as e:
        logger.info("Malformed invocation body: %s", e)
        return JSONResponse(status_code=400,
                            content=error_body("Invalid request", "Body must be a JSON object "
                                               "with a string video_id"))
    return parsed.model_dump(exclude_none=True)


def create_app(services: Services | None = None) -> FastAPI:
    services = services or build_services()
    pipeline = Pipeline(services)

    app = FastAPI(title=APP_NAME, version=APP_VERSION,
                  description="Pitch video transcription and analysis")
    app.state.services = services
    app.state.pipeline = pipeline

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": APP_VERSION}

    # ── Functions ─────────────────────────────────────────────────────

    @app.post("/functions/v1/transcribe-video")
    async def transcribe_video(request: Request):
        payload = await _read_invocation(request)
        if isinstance(payload, JSONResponse):
            return payload
        status, body = await run_in_threadpool(invoke_transcription, pipeline, payload)
        return JSONResponse(status_code=status, content=body)

    @app.post("/functions/v1/analyze-transcription")
    async def analyze_transcription(request: Request):
        payload = await _read_invocation(request)
        if isinstance(payload, JSONResponse):
            return payload
        status, body = await run_in_threadpool(invoke_analysis, pipeline, payload)
        return JSONResponse(status_code=status, content=body)

    # ── Records ───────────────────────────────────────────────────────

    @app.get("/videos/{video_id}")
    def get_video(video_id: str, owner_id: Optional[str] = None):
        try:
            record = services.db.get_video(video_id)
        except PersistenceError as e:
            logger.error("Reading video %s failed: %s", video_id, e)
            return JSONResponse(status_code=500, content=error_body("Internal error", e.message))
        if record is None or (owner_id and record.owner_id != owner_id):
            return JSONResponse(status_code=404,
                                content=error_body("Video not found", video_id))
        return record.to_dict()

    @app.get("/videos", response_model=VideoPage)
    def list_videos(owner_id: str, status: Optional[str] = None,
                    page: int = Query(1, ge=1), page_size: int = Query(10, ge=1, le=100)):
        if status and status not in ALL_STATUSES:
            return JSONResponse(status_code=400,
                                content=error_body("Invalid request",
                                                   f"Unknown status {status!r}"))
        try:
            records, total = services.db.list_videos(owner_id, status=status,
                                                     page=page, page_size=page_size)
        except PersistenceError as e:
            logger.error("Listing videos for %s failed: %s", owner_id, e)
            return JSONResponse(status_code=500, content=error_body("Internal error", e.message))
        return VideoPage(items=[r.to_dict() for r in records], total=total,
                         page=page, page_size=page_size)

    # ── Local media ───────────────────────────────────────────────────

    @app.get("/media/{path:path}")
    def get_media(path: str, expires: Optional[int] = None,
                  signature: Optional[str] = None):
        store = services.object_store
        if not isinstance(store, LocalObjectStore):
            return JSONResponse(status_code=404, content=error_body("Not found", path))

        if not store.public:
            if expires is None or not signature or not verify_signature(
                    store.signing_secret or "", store.normalize_path(path), expires, signature):
                return JSONResponse(status_code=403,
                                    content=error_body("Forbidden", "Invalid or expired link"))
        try:
            data = store.read(path)
        except AccessError:
            return JSONResponse(status_code=404, content=error_body("Not found", path))

        ext = path.rsplit(".", 1)[-1].lower() if "." in path else ""
        media_type = (ALLOWED_MEDIA_FORMATS.get(ext) or mimetypes.guess_type(path)[0]
                      or "application/octet-stream")
        return Response(content=data, media_type=media_type)

    return app
