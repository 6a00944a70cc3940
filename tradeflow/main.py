"""
TradeFlow commerce core - FastAPI application.
"""
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tradeflow.api import invoices, jobs, orders, quotes
from tradeflow.core.config import settings
from tradeflow.core.errors import InfrastructureError
from tradeflow.core.logging import setup_logging, get_logger
from tradeflow.core.rbac import PermissionCache
from tradeflow.db.session import init_db

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    init_db()
    yield


app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)
app.state.permission_cache = PermissionCache()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(InfrastructureError)
async def infrastructure_error_handler(request: Request, exc: InfrastructureError):
    return JSONResponse(status_code=500, content={"detail": str(exc), "error_kind": exc.kind.value})


app.include_router(quotes.router)
app.include_router(orders.router)
app.include_router(invoices.router)
app.include_router(jobs.router)


@app.get("/health")
async def health():
    return {"status": "ok", "app": settings.APP_NAME, "version": settings.APP_VERSION}


def main():
    uvicorn.run("tradeflow.main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)


if __name__ == "__main__":
    main()
