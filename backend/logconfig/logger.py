from loguru import logger
import sys
import os
import re
from pathlib import Path
import contextvars
import asyncio
from dotenv import load_dotenv

load_dotenv()
# ----------------------------------------------------
# Environment & Paths
# ----------------------------------------------------
ENV = os.getenv("APP_ENV", "development")
APP_NAME = "RepoSync"
LOG_LEVEL = os.getenv("LOG_LEVEL") or ("DEBUG" if ENV == "development" else "INFO")

LOG_DIR = Path(os.getenv("LOG_DIR", Path(__file__).resolve().parent.parent / "logs"))

# ----------------------------------------------------
# Context Management (Async + Threads safe)
# ----------------------------------------------------
env_var = contextvars.ContextVar("env", default=ENV)
app_name_var = contextvars.ContextVar("app_name", default=APP_NAME)
extra_context_var = contextvars.ContextVar("extra", default={})

# Provider tokens that must never reach a sink
_SECRET_PATTERNS = [
    re.compile(r"\b(gh[pousr]_[A-Za-z0-9]{20,})\b"),
    re.compile(r"\b(glpat-[A-Za-z0-9_\-]{20,})\b"),
    re.compile(r"(?i)(access_token|client_secret|webhook_secret)=([^&\s]+)"),
]


def redact(message: str) -> str:
    """Mask provider credentials that slipped into a log message."""
    for pattern in _SECRET_PATTERNS:
        if pattern.groups == 2:
            message = pattern.sub(lambda m: f"{m.group(1)}=***", message)
        else:
            message = pattern.sub("***", message)
    return message


class ContextFilter:
    """Inject environment, app name, request/operation context and redact secrets."""
    def set_context(self, **kwargs):
        extra_context_var.set(kwargs)

    def bind(self, **kwargs):
        """Add keys to the current context without dropping existing ones."""
        context = dict(extra_context_var.get())
        context.update(kwargs)
        extra_context_var.set(context)

    def clear(self):
        extra_context_var.set({})

    def __call__(self, record):
        record["extra"]["env"] = env_var.get()
        record["extra"]["app_name"] = app_name_var.get()
        record["extra"].update(extra_context_var.get())
        record["message"] = redact(record["message"])
        return record

context_filter = ContextFilter()
logger.configure(patcher=context_filter)

# ----------------------------------------------------
# Formats
# ----------------------------------------------------
CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<magenta>{extra[env]}</magenta> | <blue>{extra[app_name]}</blue> | "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line} | env={extra[env]} | app={extra[app_name]} | {message}"
)

# ----------------------------------------------------
# Handlers
# ----------------------------------------------------
logger.remove()

# Console logging
logger.add(
    sys.stdout,
    colorize=True,
    format=CONSOLE_FORMAT,
    level=LOG_LEVEL,
    backtrace=True,
    diagnose=ENV == "development",
    enqueue=ENV != "test",
)

_file_sinks_configured = False


def configure_file_logging(log_dir: Path = LOG_DIR) -> None:
    """Attach the rotating file sinks. Called once from application startup."""
    global _file_sinks_configured
    if _file_sinks_configured:
        return

    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    # Application log
    logger.add(
        log_dir / "app.log",
        format=FILE_FORMAT,
        level="INFO",
        rotation="10 MB",
        retention="30 days",
        compression="zip",
        enqueue=True
    )

    # Error log
    logger.add(
        log_dir / "error.log",
        format=FILE_FORMAT,
        level="ERROR",
        rotation="5 MB",
        retention="60 days",
        compression="zip",
        enqueue=True
    )

    # Debug log (only in development)
    if ENV == "development":
        logger.add(
            log_dir / "debug.log",
            format=FILE_FORMAT,
            level="DEBUG",
            rotation="5 MB",
            retention="7 days",
            enqueue=True
        )

    # Structured JSON logs
    try:
        logger.add(
            log_dir / "structured.json",
            serialize=True,
            level="DEBUG",
            rotation="10 MB",
            retention="15 days",
            compression="gz",
            enqueue=True,
            delay=True
        )
    except OSError as e:
        logger.warning(f"Failed to setup structured JSON logging: {e}. Using text sinks only.")

    _file_sinks_configured = True

# ----------------------------------------------------
# Exception Handling
# ----------------------------------------------------
def log_exceptions(exc_type, exc_value, exc_traceback):
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.opt(exception=(exc_type, exc_value, exc_traceback)).error("Unhandled exception")

sys.excepthook = log_exceptions

def asyncio_exception_handler(loop, context):
    msg = context.get("exception", context["message"])
    logger.error(f"Unhandled async exception: {msg}")


def install_asyncio_exception_handler() -> None:
    """Route unhandled task exceptions of the running loop to loguru."""
    asyncio.get_running_loop().set_exception_handler(asyncio_exception_handler)

# ----------------------------------------------------
# Export
# ----------------------------------------------------
def get_logger():
    return logger

def get_context_filter():
    return context_filter
