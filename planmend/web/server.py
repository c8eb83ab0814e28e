"""
Web server bootstrap for the planmend API.
"""

from __future__ import annotations

import logging
import os
import socket
import sys
from pathlib import Path

from dotenv import load_dotenv

# Load .env so PLANMEND_* overrides apply when the server is started directly
# (e.g. uvicorn planmend.web.server:create_server_app).
load_dotenv()
load_dotenv(Path.cwd() / ".env")

import uvicorn
from fastapi import FastAPI
from loguru import logger

from ..config import PlanmendConfig
from .api import create_app

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8430
LOG_FILE = Path.home() / ".planmend" / "server.log"


class InterceptHandler(logging.Handler):
    """Intercept standard logging messages toward Loguru sinks."""
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(log_file: Path = LOG_FILE) -> None:
    """Route stdlib logging (planmend core, uvicorn, fastapi) into loguru sinks."""
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(
        sys.stderr,
        level="INFO",
        colorize=True,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    )
    logger.add(
        str(log_file),
        level="DEBUG",
        rotation="10 MB",
        retention="1 week",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    for logger_name in ("uvicorn", "uvicorn.access", "uvicorn.error", "fastapi"):
        logging_logger = logging.getLogger(logger_name)
        logging_logger.handlers = [InterceptHandler()]
        logging_logger.propagate = False


def is_port_open(host: str = DEFAULT_HOST, port: int = DEFAULT_PORT, timeout: float = 0.4) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        return sock.connect_ex((host, port)) == 0


def create_server_app() -> FastAPI:
    setup_logging()
    logger.info("Starting planmend API server...")
    forced_root = os.environ.get("PLANMEND_PROJECT")
    root = Path(forced_root).expanduser().resolve() if forced_root else None
    return create_app(PlanmendConfig.load(root))


def run_server(host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
    if is_port_open(host, port):
        raise RuntimeError(f"Port {port} on {host} is already in use.")
    uvicorn.run("planmend.web.server:create_server_app", host=host, port=port, log_level="info", factory=True)
