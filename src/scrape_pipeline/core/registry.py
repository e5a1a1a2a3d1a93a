from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional

from scrape_pipeline.config_models import SinkConfig
from scrape_pipeline.core.connections import ConnectionRegistry
from scrape_pipeline.core.errors import UnknownSinkTypeError
from scrape_pipeline.sinks.base import Sink


@dataclass(frozen=True)
class SinkContext:
    """Collaborators handed to sink factories instead of global singletons."""

    connections: ConnectionRegistry = field(default_factory=ConnectionRegistry)
    logger: Optional[logging.Logger] = None


SinkFactory = Callable[[Dict[str, Any], SinkContext], Sink]


class SinkRegistry:
    """Registry mapping sink type names to sink factories."""

    def __init__(self):
        self._factories: Dict[str, SinkFactory] = {}

    def register(self, name: str, factory: SinkFactory) -> None:
        key = str(name or "").strip().lower()
        if not key:
            raise ValueError("Sink type name cannot be empty")
        self._factories[key] = factory

    def create(self, config: SinkConfig, context: Optional[SinkContext] = None) -> Sink:
        key = config.type
        if key not in self._factories:
            raise UnknownSinkTypeError(key, list(self._factories))
        return self._factories[key](dict(config.settings), context or SinkContext())

    def keys(self) -> Iterable[str]:
        return self._factories.keys()

    def __contains__(self, name: object) -> bool:
        return name in self._factories


def built_in_sink_factories() -> Dict[str, SinkFactory]:
    """Return built-in sink factories keyed by sink type."""
    from scrape_pipeline.sinks.csv_sink import CsvSink
    from scrape_pipeline.sinks.database_sink import DatabaseSink
    from scrape_pipeline.sinks.jsonl_sink import JsonlSink

    return {
        CsvSink.sink_type: lambda settings, ctx: CsvSink(settings, logger=ctx.logger),
        JsonlSink.sink_type: lambda settings, ctx: JsonlSink(settings, logger=ctx.logger),
        DatabaseSink.sink_type: lambda settings, ctx: DatabaseSink(
            settings, connections=ctx.connections, logger=ctx.logger
        ),
    }


def create_default_registry() -> SinkRegistry:
    """Create a registry preloaded with built-in sinks."""
    registry = SinkRegistry()
    for name, factory in built_in_sink_factories().items():
        registry.register(name, factory)
    return registry
