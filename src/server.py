import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import httpx
from fastmcp import FastMCP

from src.clients.cache import ResponseCache
from src.clients.queue import RequestQueue
from src.clients.quickbooks import QuickBooksClient
from src.config import Settings
from src.services.invoices import InvoiceService
from src.storage.token_store import TokenStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Shared runtime objects built once per server lifespan."""

    settings: Settings
    client: QuickBooksClient
    cache: ResponseCache[Any]
    queue: RequestQueue[Any]
    invoices: InvoiceService


_services: Services | None = None


def get_services() -> Services:
    """Get the current Services instance. Raises if not initialized."""
    if _services is None:
        raise RuntimeError("Services not initialized. Server lifespan has not started.")
    return _services


def _reset_services() -> None:
    """Clear the module-level Services reference. Used in tests."""
    global _services  # noqa: PLW0603
    _services = None


def build_services(
    settings: Settings, transport: httpx.AsyncBaseTransport | None = None
) -> Services:
    """Construct the cache, queue, client and invoice service from settings."""
    token_store = TokenStore(settings.credentials_path)
    client = QuickBooksClient(settings, token_store=token_store, transport=transport)
    cache: ResponseCache[Any] = ResponseCache(
        max_size=settings.cache_max_size,
        default_ttl=settings.cache_ttl,
        cache_dir=settings.cache_dir if settings.cache_persist else None,
    )
    queue: RequestQueue[Any] = RequestQueue(
        rate_limit_per_minute=settings.api_rate_limit_per_minute,
        concurrency=settings.api_concurrency,
    )
    invoices = InvoiceService(
        client,
        cache,
        queue,
        cache_enabled=settings.enable_cache,
        list_ttl=settings.cache_ttl,
    )
    return Services(
        settings=settings, client=client, cache=cache, queue=queue, invoices=invoices
    )


async def shutdown_services(services: Services) -> None:
    """Drain the queue, then stop the cache sweep and flush its snapshot."""
    await services.queue.shutdown()
    await services.cache.shutdown()


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[dict]:
    """Manage the QuickBooks client, cache and queue for the server lifecycle."""
    global _services  # noqa: PLW0603
    from src.config import get_settings

    settings = get_settings()
    if not settings.is_configured:
        logger.warning(
            "QuickBooks credentials incomplete; set QBO_CLIENT_ID, QBO_CLIENT_SECRET, "
            "QBO_COMPANY_ID and QBO_REFRESH_TOKEN"
        )

    _services = build_services(settings)
    _services.cache.start()
    logger.info("Services initialized (%s)", settings.qbo_environment)

    try:
        yield {"services": _services}
    finally:
        await shutdown_services(_services)
        _services = None
        logger.info("Services shut down")


mcp = FastMCP("qbo-mcp", lifespan=app_lifespan)


def setup_logging(log_level: str, data_dir: Path) -> None:
    """Configure logging with file rotation and console output.

    Args:
        log_level: Logging level string (DEBUG, INFO, WARNING, ERROR).
        data_dir: Base data directory; logs go to data_dir/logs/server.log.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Exact type check so FileHandler subclasses don't count as console output
    if not any(type(h) is logging.StreamHandler for h in root_logger.handlers):
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(formatter)
        root_logger.addHandler(console)

    log_dir = data_dir / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    if not any(isinstance(h, RotatingFileHandler) for h in root_logger.handlers):
        file_handler = RotatingFileHandler(
            log_dir / "server.log",
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=3,
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def initialize() -> FastMCP:
    """Set up directories, logging, and register tools. Returns the MCP server."""
    from src.config import get_settings

    settings = get_settings()

    settings.data_dir.mkdir(parents=True, exist_ok=True)
    (settings.data_dir / "logs").mkdir(exist_ok=True)

    setup_logging(settings.log_level, settings.data_dir)

    from src.tools.invoices import register_invoice_tools
    from src.tools.status import register_status_tools

    register_invoice_tools(mcp)
    register_status_tools(mcp)

    logger.info("QuickBooks MCP server initialized")
    return mcp
