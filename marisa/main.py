import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marisa.core.config import DEFAULT_JWT_SECRET, settings
from marisa.core.database import init_db
from marisa.core.errors import register_exception_handlers
from marisa.api.auth import router as auth_router
from marisa.api.users import router as users_router
from marisa.api.admin_users import router as admin_users_router
from marisa.api.playgrounds import router as playgrounds_router
from marisa.api.admin_playgrounds import router as admin_playgrounds_router
from marisa.api.courses import router as courses_router
from marisa.api.courses_admin import router as courses_admin_router
from marisa.api.earnings import router as earnings_router
from marisa.api.bank_accounts import router as bank_accounts_router
from marisa.api.notifications import router as notifications_router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} ({settings.ENVIRONMENT})")
    if settings.is_production() and settings.JWT_SECRET.get_secret_value() == DEFAULT_JWT_SECRET:
        raise RuntimeError("JWT_SECRET must be set in production")
    if settings.DB_CREATE_ALL:
        init_db()
    yield
    logger.info("Shutting down")


app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)

app.include_router(auth_router, prefix="/auth", tags=["auth"])
app.include_router(users_router, prefix="/users", tags=["users"])
app.include_router(admin_users_router, prefix="/admin/users", tags=["admin-users"])
app.include_router(playgrounds_router, prefix="/playgrounds", tags=["playgrounds"])
app.include_router(admin_playgrounds_router, prefix="/admin/playgrounds", tags=["admin-playgrounds"])
app.include_router(courses_router, prefix="/courses", tags=["courses"])
app.include_router(courses_admin_router, prefix="/admin/courses", tags=["admin-courses"])
app.include_router(earnings_router, prefix="/earnings", tags=["earnings"])
app.include_router(bank_accounts_router, prefix="/bank-accounts", tags=["bank-accounts"])
app.include_router(notifications_router, prefix="/notifications", tags=["notifications"])

@app.get("/health")
def health():
    return {"status": "ok", "version": settings.APP_VERSION}
