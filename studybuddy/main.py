import logging
import sys

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from studybuddy.api import admin, auth, groups, invitations, join_requests
from studybuddy.core.config import get_settings, lifespan
from studybuddy.core.database import engine, ping_database
from studybuddy.core.errors import StudyBuddyError
from studybuddy.models import Base

root = logging.getLogger()
if not root.handlers:  # don't double-add in reloads
    h = logging.StreamHandler(sys.stdout)
    h.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.addHandler(h)

root.setLevel(logging.INFO)

logger = logging.getLogger(__name__)

settings = get_settings()

ERROR_STATUS = {
    "NotFound": status.HTTP_404_NOT_FOUND,
    "AlreadyProcessed": status.HTTP_409_CONFLICT,
    "Forbidden": status.HTTP_403_FORBIDDEN,
    "Conflict": status.HTTP_409_CONFLICT,
    "ValidationError": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "StorageError": status.HTTP_503_SERVICE_UNAVAILABLE,
}

Base.metadata.create_all(bind=engine)

app = FastAPI(title="StudyBuddy API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        settings.frontend_url.rstrip("/"),
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StudyBuddyError)
async def studybuddy_error_handler(request: Request, exc: StudyBuddyError):
    code = ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if code >= 500:
        logger.warning("%s %s failed: %r", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=code, content={"detail": exc.message, "kind": exc.kind}
    )


app.include_router(auth.router)
app.include_router(groups.router)
app.include_router(join_requests.router)
app.include_router(invitations.router)
app.include_router(admin.router)


@app.get("/health", tags=["health"])
def health_check():
    """Report service status and confirm database connectivity."""
    database_status = "ok" if ping_database() else "error"
    return {
        "status": "ok",
        "database": database_status,
        "group_store": settings.group_store,
        "user_store": settings.user_store,
    }
