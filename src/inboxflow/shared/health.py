from time import perf_counter

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/health/db")
async def health_db(request: Request):
    sessions = request.app.state.container.sessions
    t0 = perf_counter()
    try:
        async with sessions.session() as s:
            await s.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"ok": False, "checks": {"db": "SELECT 1 failed"}, "error": type(e).__name__},
        )
    return {"ok": True, "checks": {"db_select_1_ms": int((perf_counter() - t0) * 1000)}}


@router.get("/health/redis")
async def health_redis(request: Request):
    client = request.app.state.container.redis
    if client is None:
        return {"service": "redis", "status": "not_configured"}
    try:
        pong = await client.ping()
    except (RedisError, OSError):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"service": "redis", "status": "unavailable"},
        )
    return {"service": "redis", "status": "ok" if pong else "degraded"}
