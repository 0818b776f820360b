"""FastAPI application exposing a Store over the REST API."""

import logging
from datetime import datetime
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..config import Config
from ..errors import Conflict, NotFound, StorageError, StoreError, ValidationError
from ..store import Store

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: 400,
    NotFound: 404,
    Conflict: 409,
    StorageError: 500,
}


def _ok(data: Any, status_code: int = 200, **extra: Any) -> JSONResponse:
    return JSONResponse({"success": True, "data": data, **extra}, status_code=status_code)


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code)


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def create_app(config: Config, store: Store) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Application configuration.
        store: Store that serves every request.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="Undangan API",
        description="Comments, guests and settings for an invitation site",
        version="0.1.0",
    )

    # Store references for route handlers
    app.state.config = config
    app.state.store = store

    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==================== Error handlers ====================

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        status_code = next(
            (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500
        )
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return _error(str(exc), status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        return _error(details or "Invalid request", 400)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error("Endpoint not found", 404)
        return _error(str(exc.detail), exc.status_code)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Server error on {request.url.path}: {exc}", exc_info=exc)
        return _error("Internal server error", 500)

    # ==================== Comments ====================

    @app.get("/api/comments")
    async def list_comments(
        page: int = 1,
        per_page: int | None = None,
        presence: str | None = None,
        q: str | None = None,
    ):
        if per_page is None:
            per_page = config.comments.per_page
        if presence and q:
            raise ValidationError("Use either presence or q, not both")
        if presence:
            result = await store.list_comments_by_presence(presence, page, per_page)
        elif q:
            result = await store.search_comments(q, page, per_page)
        else:
            result = await store.list_comments(page, per_page)

        return _ok(
            [c.to_dict() for c in result.items],
            pagination=result.pagination(),
        )

    @app.post("/api/comments")
    async def create_comment(request: Request):
        body = await _json_body(request)
        comment = await store.add_comment(
            author_name=body.get("name"),
            presence=body.get("presence"),
            body=body.get("comment"),
            gif_url=body.get("gif_url"),
            parent_id=body.get("parent_id"),
        )
        return _ok(comment.to_dict(), status_code=201)

    @app.put("/api/comments/{ref}/like")
    async def like_comment(ref: str):
        comment = await store.like_comment(ref)
        return _ok(comment.to_dict())

    @app.put("/api/comments/{ref}")
    async def update_comment(ref: str, request: Request):
        body = await _json_body(request)
        if "comment" in body:
            body["body"] = body.pop("comment")
        comment = await store.update_comment(ref, body)
        return _ok(comment.to_dict())

    @app.delete("/api/comments/{ref}")
    async def delete_comment(ref: str):
        comment = await store.delete_comment(ref)
        return _ok(comment.to_dict())

    # ==================== Guests ====================

    @app.get("/api/guests")
    async def list_guests(page: int = 1, per_page: int | None = None):
        if per_page is None:
            # No page size asked for: the whole list in one page
            first = await store.list_guests(1, 1)
            result = await store.list_guests(1, first.total) if first.total > 1 else first
        else:
            result = await store.list_guests(page, per_page)

        return _ok(
            [g.to_dict() for g in result.items],
            pagination=result.pagination(),
        )

    @app.post("/api/guests")
    async def create_guest(request: Request):
        body = await _json_body(request)
        guest = await store.add_guest(
            name=body.get("name"),
            guest_type=body.get("type"),
            category=body.get("category"),
        )
        return _ok(guest.to_dict(), status_code=201)

    @app.delete("/api/guests/{guest_id}")
    async def delete_guest(guest_id: int):
        guest = await store.delete_guest(guest_id)
        return _ok(guest.to_dict(), message="Guest deleted successfully")

    @app.delete("/api/guests")
    async def clear_guests():
        deleted = await store.clear_guests()
        return _ok({"deleted_count": deleted})

    # ==================== Settings & stats ====================

    @app.get("/api/settings")
    async def get_settings():
        return _ok(await store.get_settings())

    @app.put("/api/settings")
    async def update_settings(request: Request):
        body = await _json_body(request)
        return _ok(await store.update_settings(body))

    @app.get("/api/stats")
    async def get_stats():
        return _ok(await store.get_stats())

    @app.post("/api/stats/views")
    async def record_view():
        await store.increment_view_count()
        settings = await store.get_settings()
        return _ok({"total_views": settings.get("stats", {}).get("totalViews", 0)})

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check endpoint for monitoring and load balancers.

        Always returns 200 OK; the store flag says whether storage is usable.
        """
        return {
            "status": "ok",
            "timestamp": datetime.now().isoformat(),
            "store": await store.check_connection(),
        }

    return app
