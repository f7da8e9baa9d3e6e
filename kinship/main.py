import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kinship.api.notify_ws import router as notify_ws_router
from kinship.api.relationship import router as relationship_router
from kinship.progression.errors import (
    ConflictError,
    InvariantViolation,
    NotARelationshipParty,
    ProgressionError,
    RelationshipNotFound,
    UpstreamUnavailable,
    ValidationError,
)
from kinship.scheduler import start_scheduler, stop_scheduler
from kinship.utils.redis_pool import close_redis

log = logging.getLogger("kinship")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)

origins = [
    "http://localhost:3000",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    start_scheduler()
    yield
    stop_scheduler()
    await close_redis()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int, message: str, details=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"ok": False, "error": message, "details": details},
    )


@app.exception_handler(ProgressionError)
async def progression_error_handler(request: Request, exc: ProgressionError):
    if isinstance(exc, RelationshipNotFound):
        return _error(404, exc.message, exc.details)
    if isinstance(exc, NotARelationshipParty):
        return _error(403, exc.message, exc.details)
    if isinstance(exc, ValidationError):
        return _error(400, exc.message, exc.details)
    if isinstance(exc, ConflictError):
        return _error(409, "Operation in progress. Please wait and retry.", exc.details)
    if isinstance(exc, UpstreamUnavailable):
        return _error(503, "Progress may be slightly out of date. Please try again shortly.", exc.details)
    if isinstance(exc, InvariantViolation):
        log.error("Invariant violation on %s %s: %s", request.method, request.url.path, exc.message)
        return _error(500, "Something went wrong. Please try again later.", None)
    log.error("Unhandled progression error on %s %s: %s", request.method, request.url.path, exc.message)
    return _error(500, exc.message, None)


@app.get("/health")
async def health():
    return {"ok": True}


app.include_router(relationship_router)
app.include_router(notify_ws_router)
