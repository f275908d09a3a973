import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from src.clients.cache import ResponseCache
from src.clients.queue import RequestQueue
from src.clients.quickbooks import QuickBooksClient
from src.server import (
    _reset_services,
    app_lifespan,
    build_services,
    get_services,
    initialize,
    mcp,
    setup_logging,
    shutdown_services,
)
from src.services.invoices import InvoiceService
from tests.factories import make_settings


class TestSetupLogging:
    """Test setup_logging configuration."""

    def setup_method(self):
        root = logging.getLogger()
        for handler in root.handlers[:]:
            root.removeHandler(handler)
            handler.close()

    def teardown_method(self):
        root = logging.getLogger()
        for handler in root.handlers[:]:
            root.removeHandler(handler)
            handler.close()

    def test_sets_root_logger_level(self, tmp_path):
        setup_logging("DEBUG", tmp_path)
        assert logging.getLogger().level == logging.DEBUG

    def test_creates_console_handler(self, tmp_path):
        setup_logging("INFO", tmp_path)
        root = logging.getLogger()
        stream_handlers = [h for h in root.handlers if type(h) is logging.StreamHandler]
        assert len(stream_handlers) == 1

    def test_log_file_path(self, tmp_path):
        setup_logging("INFO", tmp_path)
        root = logging.getLogger()
        file_handler = next(
            h for h in root.handlers if isinstance(h, RotatingFileHandler)
        )
        assert Path(file_handler.baseFilename) == tmp_path / "logs" / "server.log"

    def test_no_duplicate_handlers_on_second_call(self, tmp_path):
        setup_logging("INFO", tmp_path)
        setup_logging("INFO", tmp_path)
        root = logging.getLogger()
        stream_handlers = [h for h in root.handlers if type(h) is logging.StreamHandler]
        file_handlers = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
        assert len(stream_handlers) == 1
        assert len(file_handlers) == 1

    def test_invalid_log_level_falls_back_to_info(self, tmp_path):
        setup_logging("INVALID_LEVEL", tmp_path)
        assert logging.getLogger().level == logging.INFO


class TestInitialize:
    """Test the initialize function."""

    def setup_method(self):
        from src.config import reset_settings

        reset_settings()
        root = logging.getLogger()
        for handler in root.handlers[:]:
            root.removeHandler(handler)
            handler.close()

    def teardown_method(self):
        from src.config import reset_settings

        reset_settings()
        root = logging.getLogger()
        for handler in root.handlers[:]:
            root.removeHandler(handler)
            handler.close()

    def test_returns_mcp_instance(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        assert initialize() is mcp

    def test_creates_data_and_logs_dirs(self, tmp_path, monkeypatch):
        data_dir = tmp_path / "new_data"
        monkeypatch.setenv("DATA_DIR", str(data_dir))
        initialize()
        assert (data_dir / "logs").exists()

    async def test_registers_tools_and_resources(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        server = initialize()
        tools = await server.get_tools()
        assert {"get_invoices", "create_invoice", "get_api_status", "help"} <= set(tools)
        resources = await server.get_resources()
        assert "qbo://cache/stats" in resources


class TestBuildServices:
    def test_wires_components_from_settings(self, tmp_path):
        settings = make_settings(
            data_dir=tmp_path,
            api_rate_limit_per_minute=30,
            api_concurrency=2,
            cache_max_size=10,
            cache_ttl=120,
            enable_cache=False,
        )
        services = build_services(settings)
        assert isinstance(services.client, QuickBooksClient)
        assert isinstance(services.cache, ResponseCache)
        assert isinstance(services.queue, RequestQueue)
        assert isinstance(services.invoices, InvoiceService)
        assert services.queue.rate_limit_per_minute == 30
        assert services.queue.concurrency == 2
        assert services.cache.max_size == 10
        assert services.invoices.list_ttl == 120
        assert services.invoices.cache_enabled is False
        assert services.invoices.queue is services.queue
        assert services.invoices.cache is services.cache

    def test_credentials_dir_created(self, tmp_path):
        build_services(make_settings(data_dir=tmp_path))
        assert (tmp_path / ".credentials").is_dir()

    async def test_persistent_cache_survives_restart(self, tmp_path):
        settings = make_settings(data_dir=tmp_path, cache_persist=True)
        first = build_services(settings)
        first.cache.set("invoice:1", {"Id": "1"})
        await shutdown_services(first)

        second = build_services(settings)
        assert second.cache.get("invoice:1") == {"Id": "1"}


class TestAppLifespan:
    """Test the services lifecycle."""

    def setup_method(self):
        from src.config import reset_settings

        reset_settings()
        _reset_services()

    def teardown_method(self):
        from src.config import reset_settings

        reset_settings()
        _reset_services()

    async def test_lifespan_initializes_and_clears_services(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        import src.server as server_module

        async with app_lifespan(mcp) as result:
            assert result["services"] is get_services()
            assert server_module._services is not None

        assert server_module._services is None

    async def test_lifespan_shuts_down_queue(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))

        async with app_lifespan(mcp) as result:
            queue = result["services"].queue

        assert queue.is_paused

    async def test_warns_when_unconfigured(self, tmp_path, monkeypatch, caplog):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        monkeypatch.setenv("QBO_REFRESH_TOKEN", "")

        with caplog.at_level(logging.WARNING, logger="src.server"):
            async with app_lifespan(mcp):
                pass

        assert "credentials incomplete" in caplog.text


class TestGetServices:
    def setup_method(self):
        _reset_services()

    def teardown_method(self):
        _reset_services()

    def test_raises_when_not_initialized(self):
        with pytest.raises(RuntimeError, match="Services not initialized"):
            get_services()

    def test_reset_clears_reference(self):
        import src.server as server_module

        server_module._services = "sentinel"  # type: ignore[assignment]
        _reset_services()
        assert server_module._services is None
