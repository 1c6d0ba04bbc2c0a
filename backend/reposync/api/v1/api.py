from typing import Optional
from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from reposync.api.v1.repositories.routes import router as repositories_router
from reposync.api.v1.sync.routes import router as sync_router
from reposync.core.settings import get_settings
from reposync.dependencies.services import ServiceContainer, build_services
from reposync.middleware.error_handler import register_error_handlers

settings = get_settings()

api_router = APIRouter()
api_router.include_router(repositories_router)
api_router.include_router(sync_router)


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        docs_url=None,
        redoc_url=None,
    )
    app.state.services = services or build_services(settings)

    register_error_handlers(app, include_debug_info=settings.APP_ENV == "development")

    # CORS added last so it wraps the error middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_URL] if settings.FRONTEND_URL else ["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix=settings.API_V1_STR)

    @app.get("/")
    async def root():
        return {"message": "Welcome to RepoSync Backend API"}

    @app.get("/health")
    async def health():
        return {"status": "ok", "providers": settings.get_enabled_providers()}

    return app
