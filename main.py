"""FastAPI application for the document approval workflow."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from docflow import __version__
from docflow.config import settings
from docflow.database import init_db
from docflow.exceptions import WorkflowError
from docflow.logging_config import setup_logging
from docflow.routes import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    init_db()
    logger.info(f"{settings.APP_NAME} {__version__} started ({settings.ENVIRONMENT})")
    yield
    logger.info(f"{settings.APP_NAME} shutting down")


app = FastAPI(
    title=settings.APP_NAME,
    description="Multi-step document approval routing with audit trail and notifications",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
    else:
        logger.info(
            f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.detail}"
        )
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
        headers=headers,
    )


app.include_router(router, prefix=settings.API_PREFIX)


@app.get("/health")
def health():
    return {"status": "ok", "version": __version__}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
