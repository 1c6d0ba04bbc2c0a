import uvicorn
from logconfig.logger import (
    get_logger,
    get_context_filter,
    configure_file_logging,
    install_asyncio_exception_handler,
)
from reposync.api.v1.api import create_app
from reposync.core.settings import get_settings
from reposync.db.session import create_tables

# Initialize logger
logger = get_logger()
context_filter = get_context_filter()
settings = get_settings()

app = create_app()


@app.on_event("startup")
async def startup_event():
    context_filter.set_context(request_id="startup", user_id="system")

    configure_file_logging()
    install_asyncio_exception_handler()

    is_valid, report = settings.validate_all_configurations()
    for warning in report["warnings"]:
        logger.warning(f"Configuration: {warning}")
    for error in report["errors"]:
        logger.error(f"Configuration: {error}")
    if not is_valid:
        raise RuntimeError("Invalid configuration; see the errors above")

    await create_tables()
    logger.info("Application startup: Database tables created successfully")

    await app.state.services.orchestrator.start()
    logger.info(f"Application startup: enabled providers {settings.get_enabled_providers()}")


@app.on_event("shutdown")
async def shutdown_event():
    await app.state.services.orchestrator.stop()
    logger.info("Application shutdown: Background syncs stopped")


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.APP_ENV == "development",
        log_level="info"
    )
