"""Tests for settings and logging setup."""

import logging

import pytest
from pydantic import ValidationError

from marketflow.blocks import InMemoryBlockService
from marketflow.config import WorkflowSettings, get_settings
from marketflow.engine import WorkflowEngine
from marketflow.logging_config import LOG_FORMAT, configure_logging
from marketflow.notifications import NotificationDispatcher
from marketflow.storage import InMemoryEntityStore, SQLiteEntityStore, create_store


class TestSettings:
    def test_defaults(self, settings):
        assert settings.refund_window_days == 7
        assert settings.message_delete_window_hours == 24
        assert settings.platform_fee_percent == 5.0
        assert settings.db_path is None

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("MARKETFLOW_REFUND_WINDOW_DAYS", "14")
        monkeypatch.setenv("MARKETFLOW_PLATFORM_FEE_PERCENT", "2.5")

        settings = WorkflowSettings(_env_file=None)

        assert settings.refund_window_days == 14
        assert settings.platform_fee_percent == 2.5

    def test_invalid_fee_rejected(self):
        with pytest.raises(ValidationError):
            WorkflowSettings(_env_file=None, platform_fee_percent=150)

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()


class TestSettingsWiring:
    """Settings reach the components that use them."""

    def test_engine_store_from_db_path(self, tmp_path):
        settings = WorkflowSettings(_env_file=None, db_path=str(tmp_path / "market.db"))

        engine = WorkflowEngine(settings=settings)

        assert isinstance(engine.store, SQLiteEntityStore)
        user = engine.register_user("Nia", "nia@example.com")
        assert (tmp_path / "market.db").exists()
        assert engine.store.get("user", user.id).email == "nia@example.com"

    def test_engine_store_defaults_to_memory(self, settings):
        assert isinstance(WorkflowEngine(settings=settings).store, InMemoryEntityStore)
        assert isinstance(create_store(None), InMemoryEntityStore)

    def test_dispatcher_pool_size_from_settings(self, monkeypatch):
        settings = WorkflowSettings(_env_file=None, notification_workers=3)
        monkeypatch.setattr("marketflow.notifications.get_settings", lambda: settings)

        dispatcher = NotificationDispatcher([], InMemoryBlockService())
        try:
            assert dispatcher._executor._max_workers == 3
        finally:
            dispatcher.shutdown()


class TestLogging:
    @pytest.fixture(autouse=True)
    def restore_package_logger(self):
        logger = logging.getLogger("marketflow")
        handlers, level = list(logger.handlers), logger.level
        yield
        logger.handlers = handlers
        logger.setLevel(level)

    def test_configure_does_not_stack_handlers(self):
        logging.getLogger("marketflow").handlers = []

        configure_logging("DEBUG")
        logger = configure_logging("WARNING")

        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING
        assert logger.handlers[0].formatter._fmt == LOG_FORMAT

    def test_custom_handler(self):
        handler = logging.NullHandler()

        logger = configure_logging(logging.INFO, handler=handler)

        assert handler in logger.handlers
