import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import LOG_LEVEL
from app.errors import TraceabilityError
from app.services import get_services, shutdown_services
# ROUTERS
from routes.admin import router as admin_router
from routes.batches import router as batch_router
from routes.certificates import router as certificate_router
from routes.public import router as public_router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = app.dependency_overrides.get(get_services, get_services)()
    await services.store.ensure_indexes()
    logger.info("Traceability API started (ledger %s)", "enabled" if services.ledger else "disabled")
    yield
    await shutdown_services()


app = FastAPI(title="Batch Traceability API", lifespan=lifespan)

# ================= CORS =================
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ================= ROUTERS =================
app.include_router(batch_router)
app.include_router(certificate_router)
app.include_router(public_router)
app.include_router(admin_router)

# ================= ERRORS =================

@app.exception_handler(TraceabilityError)
async def traceability_error_handler(request: Request, exc: TraceabilityError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health")
async def health():
    return {"status": "ok"}
