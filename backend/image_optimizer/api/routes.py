"""API routes: image serving with format negotiation, batch control and maintenance."""
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from fastapi.responses import FileResponse, PlainTextResponse, Response

from image_optimizer.errors import AlreadyRunning, EmptyQueue
from image_optimizer.security import client_ip
from image_optimizer.serving import ServeResponse

logger = logging.getLogger("image_optimizer.api")

images_router = APIRouter(tags=["images"])
router = APIRouter(prefix="/api", tags=["optimizer"])


def get_services(request: Request):
    return request.app.state.services


def is_admin(request: Request) -> bool:
    token = get_services(request).admin_token
    supplied = request.headers.get("X-Admin-Token") or ""
    return bool(token) and hmac.compare_digest(supplied.encode(), token.encode())


def require_admin(request: Request) -> None:
    """Admin routes are open when no ADMIN_TOKEN is configured."""
    if get_services(request).admin_token and not is_admin(request):
        raise HTTPException(401, "Invalid or missing admin token")


def _render(result: ServeResponse) -> Response:
    if result.status == 200 and result.path is not None:
        return FileResponse(result.path, headers=result.headers, media_type=result.media_type)
    if result.status == 304:
        return Response(status_code=304, headers=result.headers)
    headers = {k: v for k, v in result.headers.items() if k != "Content-Type"}
    return PlainTextResponse(result.body.decode("utf-8"), status_code=result.status, headers=headers)


def _serve(request: Request, requested: Optional[str], route: str) -> Response:
    services = get_services(request)
    client = client_ip(request.headers, request.client.host if request.client else None)
    if not is_admin(request):
        limit = services.limiter.check(client, route)
        if not limit.allowed:
            return PlainTextResponse(
                "Too many requests",
                status_code=429,
                headers={"Retry-After": str(limit.retry_after), "Cache-Control": "no-store"},
            )
    result = services.server.serve(
        requested,
        accept=request.headers.get("accept", ""),
        if_modified_since=request.headers.get("if-modified-since"),
        if_none_match=request.headers.get("if-none-match"),
        client=client,
    )
    return _render(result)


@images_router.get("/images")
def serve_image_query(request: Request, file: Optional[str] = Query(None)):
    """Serve ?file=<path relative to the media root>."""
    return _serve(request, file, "images")


@images_router.get("/images/{path:path}")
def serve_image(request: Request, path: str):
    return _serve(request, path, "images")


@router.get("/health")
def health(request: Request):
    services = get_services(request)
    return {
        "status": "ok",
        "converter": services.orchestrator.converter.name if services.orchestrator.converter else None,
        "batch_status": services.scheduler.progress()["status"],
    }


@router.get("/converter")
def converter_status(request: Request):
    services = get_services(request)
    problem = services.orchestrator.can_convert()
    return {
        "converter": services.orchestrator.converter_info(),
        "capabilities": services.factory.server_capabilities(),
        "can_convert": problem is None,
        "reason": problem.to_dict() if problem else None,
        "stats": services.orchestrator.get_stats(),
        "settings": services.config.resolved(),
    }


@router.get("/negotiate")
def negotiate(request: Request, file: str = Query(...)):
    """Which format a request with this Accept header would get, and which artifacts exist."""
    services = get_services(request)
    return services.server.negotiation_report(
        file,
        request.headers.get("accept", ""),
        request.headers.get("user-agent", ""),
    )


@router.get("/batch")
def batch_progress(request: Request):
    return get_services(request).scheduler.progress()


@router.post("/batch", dependencies=[Depends(require_admin)])
def batch_start(request: Request, options: Optional[dict] = Body(None)):
    """Start a batch run. Body: format, force, limit, offset, subject_ids, priority (all optional)."""
    scheduler = get_services(request).scheduler
    try:
        progress = scheduler.start(options or {})
    except AlreadyRunning as e:
        raise HTTPException(409, str(e))
    except EmptyQueue as e:
        raise HTTPException(400, str(e))
    except (TypeError, ValueError) as e:
        raise HTTPException(422, str(e))
    return progress.to_dict()


@router.delete("/batch", dependencies=[Depends(require_admin)])
def batch_cancel(request: Request):
    if not get_services(request).scheduler.cancel():
        raise HTTPException(409, "No batch conversion is running")
    return get_services(request).scheduler.progress()


@router.post("/batch/process", dependencies=[Depends(require_admin)])
def batch_process_now(request: Request):
    scheduler = get_services(request).scheduler
    if scheduler.force_process() is None:
        raise HTTPException(409, "No batch conversion is running")
    return scheduler.progress()


@router.get("/batch/queue", dependencies=[Depends(require_admin)])
def batch_queue(request: Request):
    return get_services(request).scheduler.queue_status()


@router.get("/batch/stats", dependencies=[Depends(require_admin)])
def batch_stats(request: Request):
    services = get_services(request)
    stats = services.scheduler.detailed_statistics()
    stats["recent_errors"] = services.sink.recent(20)
    return stats


@router.post("/cleanup", dependencies=[Depends(require_admin)])
def cleanup(request: Request):
    try:
        return get_services(request).scheduler.cleanup_temporary_files()
    except Exception as e:
        logger.exception("Cleanup failed: %s", e)
        raise HTTPException(500, str(e))
