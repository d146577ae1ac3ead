from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from knowflow.config import settings
from knowflow.api import workflows, executions, steps
from knowflow.core.exceptions import (
    ConfigurationError,
    ExecutionNotFound,
    InvalidStateTransition,
    SnapshotNotFound,
    WorkflowNotFound,
)
from knowflow.core.logging import logger
from knowflow.integrations.http_client import HttpClient

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(f"{settings.PROJECT_NAME} starting")
    yield
    # Shutdown
    await HttpClient.close_client()

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
)

# Set all CORS enabled origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc), "errors": exc.errors},
    )

@app.exception_handler(WorkflowNotFound)
@app.exception_handler(ExecutionNotFound)
@app.exception_handler(SnapshotNotFound)
async def not_found_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

@app.exception_handler(InvalidStateTransition)
async def state_transition_handler(request: Request, exc: InvalidStateTransition):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

app.include_router(workflows.router, prefix=f"{settings.API_V1_STR}/workflows", tags=["workflows"])
app.include_router(executions.router, prefix=settings.API_V1_STR, tags=["executions"])
app.include_router(steps.router, prefix=f"{settings.API_V1_STR}/steps", tags=["steps"])

@app.get("/")
async def root():
    return {"message": "Knowflow Workflow API is running"}

@app.get("/health")
async def health_check():
    return {"status": "healthy"}
