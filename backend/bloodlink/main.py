import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import socketio

from bloodlink.config import get_settings
from bloodlink.db.session import engine, Base
from bloodlink.errors import BloodLinkError
import bloodlink.models  # noqa: F401  register all ORM models with Base.metadata
from bloodlink.api.routes import requests, donors, doctors
from bloodlink.api.websocket.handler import sio

settings = get_settings()
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Socket.IO integration; serve with ``uvicorn bloodlink.main:sio_app``
sio_app = socketio.ASGIApp(sio, other_asgi_app=app)

# API routes
app.include_router(requests.router, prefix=settings.API_PREFIX, tags=["Blood Requests"])
app.include_router(donors.router, prefix=settings.API_PREFIX, tags=["Donors"])
app.include_router(doctors.router, prefix=settings.API_PREFIX, tags=["Doctors"])


@app.exception_handler(BloodLinkError)
async def bloodlink_error_handler(request: Request, exc: BloodLinkError):
    if exc.status_code >= 500:
        logger.error("Unhandled service error on %s: %s", request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
async def startup():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("%s %s started", settings.APP_NAME, settings.APP_VERSION)


@app.on_event("shutdown")
async def shutdown():
    await engine.dispose()


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": settings.APP_NAME}
