"""FastAPI adapter exposing the ledger actions over HTTP."""
from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Body, FastAPI, Request
from fastapi.responses import JSONResponse, Response

from core.errors import DependencyUnavailableError
from core.settings import get_settings
from helpers.errors import error_response
from ledger_service import LedgerService
from logging_utils import init_logging
from metrics import render_metrics

log = logging.getLogger("ledger-web")

_SERVICE: Optional[LedgerService] = None
_SERVICE_LOCK = threading.Lock()


def _default_service() -> LedgerService:
    global _SERVICE
    with _SERVICE_LOCK:
        if _SERVICE is None:
            _SERVICE = LedgerService.from_settings(get_settings())
        return _SERVICE


def create_app(
    service: Optional[LedgerService] = None, *, diagnostic: Optional[bool] = None
) -> FastAPI:
    """Build the HTTP app; without ``service`` one is built from settings on first use."""

    shutdown = threading.Event()

    def get_service() -> LedgerService:
        return service if service is not None else _default_service()

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        ledger = get_service()
        try:
            ledger.storage.start()
        except DependencyUnavailableError:
            log.warning(
                "ledger store unavailable at startup",
                extra={"meta": {"backend": ledger.storage.backend_name}},
            )
        else:
            log.info(
                "ledger web started",
                extra={"meta": {"backend": ledger.storage.backend_name}},
            )
        try:
            yield
        finally:
            shutdown.set()
            ledger.storage.stop()
            log.info("ledger web stopped")

    app = FastAPI(title="Lime Ledger", docs_url=None, redoc_url=None, lifespan=lifespan)

    def diagnostic_mode() -> bool:
        if diagnostic is not None:
            return diagnostic
        return bool(get_settings().DIAGNOSTIC_ERRORS)

    def fail(exc: Exception, *, action: str, user_id: Optional[str] = None) -> JSONResponse:
        status, payload = error_response(
            exc,
            diagnostic=diagnostic_mode(),
            details={"action": action, "user_id": user_id},
        )
        return JSONResponse(payload, status_code=status)

    @app.middleware("http")
    async def _middleware(request: Request, call_next):  # type: ignore[override]
        if shutdown.is_set():
            return JSONResponse({"status": "shutting_down"}, status_code=503)
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Cache-Control"] = "no-store"
        return response

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        try:
            payload = await get_service().ahealth()
        except Exception as exc:
            return fail(exc, action="healthz")
        return JSONResponse(payload, status_code=200 if payload["ok"] else 503)

    @app.get("/metrics", include_in_schema=False)
    def metrics_endpoint() -> Response:
        payload = render_metrics()
        return Response(content=payload, media_type="text/plain; version=0.0.4; charset=utf-8")

    @app.get("/api/users/{user_id}")
    async def get_user(user_id: str) -> JSONResponse:
        try:
            return JSONResponse(await get_service().aget_user(user_id))
        except Exception as exc:
            return fail(exc, action="get_user", user_id=user_id)

    @app.put("/api/users/{user_id}")
    async def update_user(user_id: str, patch: Dict[str, Any] = Body(...)) -> JSONResponse:
        try:
            return JSONResponse(await get_service().aupdate_user(user_id, patch))
        except Exception as exc:
            return fail(exc, action="update_user", user_id=user_id)

    @app.post("/api/users/{user_id}/start-farming")
    async def start_farming(user_id: str) -> JSONResponse:
        try:
            return JSONResponse(await get_service().astart_farming(user_id))
        except Exception as exc:
            return fail(exc, action="start_farming", user_id=user_id)

    @app.post("/api/users/{user_id}/claim-daily-reward")
    async def claim_daily_reward(user_id: str) -> JSONResponse:
        try:
            return JSONResponse(await get_service().aclaim_daily_reward(user_id))
        except Exception as exc:
            return fail(exc, action="claim_daily_reward", user_id=user_id)

    @app.post("/api/users/{user_id}/attempts")
    async def update_attempts(user_id: str, body: Dict[str, Any] = Body(...)) -> JSONResponse:
        try:
            value = body.get("attempts", body.get("attemptsCounter"))
            return JSONResponse(await get_service().aupdate_attempts(user_id, value))
        except Exception as exc:
            return fail(exc, action="update_attempts", user_id=user_id)

    @app.get("/api/users/{user_id}/referrals")
    async def get_referrals(user_id: str) -> JSONResponse:
        try:
            return JSONResponse(await get_service().aget_referrals(user_id))
        except Exception as exc:
            return fail(exc, action="get_referrals", user_id=user_id)

    @app.post("/api/users/{user_id}/apply-referral")
    async def apply_referral(user_id: str, body: Dict[str, Any] = Body(...)) -> JSONResponse:
        try:
            code = body.get("referralCode", body.get("code"))
            return JSONResponse(await get_service().aapply_referral(user_id, code))
        except Exception as exc:
            return fail(exc, action="apply_referral", user_id=user_id)

    return app


app = create_app()


def main() -> None:  # pragma: no cover - process entry point
    import uvicorn

    settings = get_settings()
    init_logging("ledger-web", settings)
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":  # pragma: no cover
    main()
