#=================================================================
# taxflow/main_app.py
# FastAPI application entry-point: webhook intake, ops API, embedded workers.
#=================================================================

import logging, secrets
from typing import Optional

from fastapi import FastAPI, Depends, Request, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from taxflow import logging_filters
from taxflow.config import settings
from taxflow.db import init_db, dispose_engine
from taxflow.runtime import Runtime, build_runtime

# Public webhooks (signature-checked, no auth)
from taxflow.webhooks.intake import router as intake_router

# Operator API under /admin/*
from taxflow.ops.jobs_api import router as jobs_admin_router

# --- Logging setup (console, INFO level) ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s | %(message)s"
)
logger = logging.getLogger("uvicorn.error")
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging_filters.install()

# --- Simple HTTP Basic Auth for /admin/* protected endpoints ---
security = HTTPBasic()

def verify_admin(credentials: HTTPBasicCredentials = Depends(security)):
    ok_user = secrets.compare_digest(credentials.username, settings.ADMIN_USER)
    ok_pass = secrets.compare_digest(credentials.password, settings.ADMIN_PASS)
    if not (ok_user and ok_pass):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )


def create_app(runtime: Optional[Runtime] = None, start_workers: Optional[bool] = None) -> FastAPI:
    app = FastAPI(
        title="Taxflow Intake Pipeline",
        description="Webhook intake, regulatory submissions and the job workers behind them.",
    )
    app.state.runtime = runtime or build_runtime(settings)
    embedded = settings.EMBEDDED_WORKERS if start_workers is None else start_workers

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------------- Include routers ----------------
    app.include_router(intake_router)  # /webhooks/{source}
    app.include_router(
        jobs_admin_router,
        prefix="/admin",
        dependencies=[Depends(verify_admin)],
    )                                  # /admin/jobs/*

    # --- Root endpoint ---
    @app.get("/")
    async def home():
        return {"status": "running", "service": "Taxflow Intake Pipeline"}

    # --- Global error handler (keeps full stack trace in logs) ---
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal error"},
        )

    # ---- Background worker lifecycle ----
    @app.on_event("startup")
    async def _startup():
        await init_db()
        if embedded:
            app.state.runtime.pool.start()

    @app.on_event("shutdown")
    async def _shutdown():
        rt: Runtime = app.state.runtime
        if rt.pool.running:
            await rt.pool.stop(timeout=5.0)
        await rt.notifier.drain()
        await dispose_engine()

    return app


app = create_app()
