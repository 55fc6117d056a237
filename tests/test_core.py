import logging
from datetime import datetime, timedelta

from helpdesk.core.config import Settings, get_settings
from helpdesk.core.logging import configure_logging, init_tracer, module_log_levels, parse_key_values, shutdown_tracer
from helpdesk.main import build_ticket_service
from helpdesk.tickets.memory import InMemoryTicketStore


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("TICKET_NUMBER_PREFIX", "HD")
    monkeypatch.setenv("ESCALATION_OVERDUE_HOURS", "6")
    monkeypatch.setenv("AUTO_ASSIGN_ENABLED", "false")

    settings = Settings()

    assert settings.ticket_number_prefix == "HD"
    assert settings.escalation_overdue_threshold == timedelta(hours=6)
    assert settings.auto_assign_enabled is False
    assert settings.comment_edit_window == timedelta(hours=24)


def test_get_settings_is_cached():
    get_settings.cache_clear()

    assert get_settings() is get_settings()


def test_parse_key_values_skips_malformed_items():
    assert parse_key_values("api-key=abc, tenant = helpdesk,broken,=x") == {
        "api-key": "abc",
        "tenant": "helpdesk",
    }
    assert parse_key_values(None) == {}


def test_configure_logging_sets_level():
    logger = configure_logging(Settings(log_level="debug"))

    assert logger.name == "helpdesk"
    assert logger.getEffectiveLevel() == logging.DEBUG


def test_module_log_levels_are_scoped_to_helpdesk(monkeypatch):
    monkeypatch.setenv("LOG_LEVELS", "tickets.audit=debug, helpdesk.api=WARNING, tickets.sla=loud")

    settings = Settings(log_level="info")

    assert module_log_levels(settings) == {
        "helpdesk": logging.INFO,
        "helpdesk.tickets.audit": logging.DEBUG,
        "helpdesk.api": logging.WARNING,
        "helpdesk.tickets.sla": logging.INFO,
    }

    configure_logging(settings)

    assert logging.getLogger("helpdesk.tickets.audit").getEffectiveLevel() == logging.DEBUG
    assert logging.getLogger("helpdesk.api.routes.tickets").getEffectiveLevel() == logging.WARNING
    assert logging.getLogger("helpdesk.tickets.service").getEffectiveLevel() == logging.INFO


def test_tracer_disabled_by_default():
    provider = init_tracer(Settings(otel_enabled=False))

    assert provider is None
    shutdown_tracer(provider)


def test_build_ticket_service_uses_settings():
    store = InMemoryTicketStore()
    settings = Settings(ticket_number_prefix="HD", timezone="Europe/Malta")

    service = build_ticket_service(store, settings)

    moment = datetime(2026, 1, 5, 12, 0, tzinfo=settings.tzinfo)
    assert service._allocator.format_number(moment, 2) == "HD-202601-0002"
