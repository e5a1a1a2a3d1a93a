from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from scrape_pipeline.config_models import ScraperConfig, SinkConfig
from scrape_pipeline.core.connections import ConnectionRegistry
from scrape_pipeline.core.pipeline import DEFAULT_BATCH_SIZE, Pipeline
from scrape_pipeline.core.registry import SinkContext, SinkRegistry, create_default_registry
from scrape_pipeline.sinks.base import Sink
from scrape_pipeline.utils.logging import get_logger

# Settings key through which file sinks learn the producer name for {scraper}
PRODUCER_NAME_KEY = "scraper_name"


class PipelineAssembler:
    """
    Factory responsible for wiring sinks into a pipeline.
    Sink construction errors (unknown type, invalid settings) surface here,
    before any sink acquires resources.
    """

    def __init__(
        self,
        registry: Optional[SinkRegistry] = None,
        connections: Optional[ConnectionRegistry] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.registry = registry or create_default_registry()
        self.connections = connections or ConnectionRegistry()
        self.log = logger or get_logger("scrape_pipeline.assembler")

    def build(
        self,
        sink_configs: Sequence[SinkConfig],
        batch_size: int = DEFAULT_BATCH_SIZE,
        producer_name: str = "unknown",
    ) -> Pipeline:
        """
        Build a pipeline from declarative sink configs.

        Args:
            sink_configs: Output configs; disabled entries are skipped.
            batch_size: Records per chunk.
            producer_name: Scraper name injected into every sink's settings.

        Returns:
            A pipeline that still needs initialize().
        """
        sinks: List[Sink] = []
        context = SinkContext(connections=self.connections)

        for config in sink_configs:
            if not config.enabled:
                self.log.info("Output skipped (disabled): type=%s", config.type)
                continue
            sinks.append(self._sink(config, producer_name, context))

        self.log.info(
            "Pipeline assembled: producer=%s outputs=%s batch_size=%d",
            producer_name,
            [s.describe() for s in sinks],
            batch_size,
        )
        return Pipeline(sinks, batch_size=batch_size)

    def _sink(self, config: SinkConfig, producer_name: str, context: SinkContext) -> Sink:
        """Create one sink with the producer name injected into a copy of its settings."""
        settings = {**config.settings, PRODUCER_NAME_KEY: producer_name}
        return self.registry.create(config.model_copy(update={"settings": settings}), context)


def assemble(
    config: ScraperConfig,
    registry: Optional[SinkRegistry] = None,
    connections: Optional[ConnectionRegistry] = None,
) -> Pipeline:
    """Build the output pipeline declared by a scraper config."""
    assembler = PipelineAssembler(registry=registry, connections=connections)
    return assembler.build(config.outputs, batch_size=config.pipeline.batch_size, producer_name=config.name)
