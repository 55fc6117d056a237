"""Logging and tracing setup for the helpdesk service."""

from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from helpdesk.core.config import Settings

ROOT_LOGGER = "helpdesk"

_TRACER_INITIALISED = False


def parse_key_values(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2``; items without a key or ``=`` are skipped."""

    if not raw:
        return {}
    pairs: dict[str, str] = {}
    for item in raw.split(","):
        key, separator, value = item.partition("=")
        if not separator or not key.strip():
            continue
        pairs[key.strip()] = value.strip()
    return pairs


def _level(name: str | None, default: int = logging.INFO) -> int:
    if not name:
        return default
    value = logging.getLevelName(name.strip().upper())
    return value if isinstance(value, int) else default


def module_log_levels(settings: Settings) -> dict[str, int]:
    """Levels for the ``helpdesk`` logger tree.

    ``log_levels`` holds overrides such as ``tickets.audit=DEBUG,api=WARNING``;
    names are taken relative to ``helpdesk`` unless they already start with it.
    """

    base = _level(settings.log_level)
    levels = {ROOT_LOGGER: base}
    for name, level in parse_key_values(settings.log_levels).items():
        if name != ROOT_LOGGER and not name.startswith(f"{ROOT_LOGGER}."):
            name = f"{ROOT_LOGGER}.{name}"
        levels[name] = _level(level, base)
    return levels


def configure_logging(settings: Settings) -> logging.Logger:
    levels = module_log_levels(settings)
    loggers: dict[str, Any] = {name: {"level": level} for name, level in levels.items()}
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": settings.log_format}},
            "handlers": {"default": {"class": "logging.StreamHandler", "formatter": "default"}},
            "root": {"handlers": ["default"], "level": levels[ROOT_LOGGER]},
            "loggers": loggers,
        }
    )
    return logging.getLogger(ROOT_LOGGER)


def init_tracer(settings: Settings) -> TracerProvider | None:
    """Install an OTLP tracer provider for ticket spans when tracing is on."""

    global _TRACER_INITIALISED

    if _TRACER_INITIALISED or not settings.otel_enabled:
        return None

    exporter_kwargs: dict[str, Any] = {}
    if settings.otel_exporter_otlp_endpoint:
        exporter_kwargs["endpoint"] = settings.otel_exporter_otlp_endpoint
    headers = parse_key_values(settings.otel_exporter_otlp_headers)
    if headers:
        exporter_kwargs["headers"] = headers

    resource = Resource(
        attributes={
            "service.name": settings.otel_service_name,
            "deployment.environment": settings.environment,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**exporter_kwargs)))
    trace.set_tracer_provider(provider)
    _TRACER_INITIALISED = True
    return provider


def shutdown_tracer(provider: TracerProvider | None) -> None:
    global _TRACER_INITIALISED

    if provider is not None:
        provider.shutdown()
        _TRACER_INITIALISED = False
