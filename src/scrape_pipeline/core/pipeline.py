from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Dict, Iterator, List, Optional, Sequence

from scrape_pipeline.core.errors import (
    PipelineStateError,
    SinkCloseError,
    SinkInitializationError,
)
from scrape_pipeline.core.models import BatchResult, PipelineResult, Record
from scrape_pipeline.sinks.base import Sink
from scrape_pipeline.utils.logging import get_logger

DEFAULT_BATCH_SIZE = 50


def chunked(records: Sequence[Record], size: int) -> Iterator[List[Record]]:
    """Yield consecutive slices of at most `size` records, preserving order."""
    for start in range(0, len(records), size):
        yield list(records[start:start + size])


class Pipeline:
    """
    Fans batches of records out to every owned sink.

    Records are split into chunks of `batch_size`. Each chunk is written to all
    sinks concurrently, and the next chunk starts only once every sink has
    settled. A sink that raises is reported as a failed BatchResult for that
    chunk; other sinks and later chunks are unaffected. The pipeline itself
    never retries.
    """

    def __init__(
        self,
        sinks: Sequence[Sink],
        batch_size: int = DEFAULT_BATCH_SIZE,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            sinks: Sinks owned by this pipeline; they are initialized and closed with it.
            batch_size: Records per chunk, must be positive.
            logger: Optional logger, defaults to `scrape_pipeline.pipeline`.
        """
        if int(batch_size) < 1:
            raise ValueError("batch_size must be a positive integer")
        self.sinks: List[Sink] = list(sinks)
        self.batch_size = int(batch_size)
        self.log = logger or get_logger("scrape_pipeline.pipeline")
        self._initialized = False
        self._closed = False
        self._shutdown_requested = False

    @property
    def sink_ids(self) -> List[str]:
        return [self.sink_id(i) for i in range(len(self.sinks))]

    @staticmethod
    def sink_id(index: int) -> str:
        return f"output_{index}"

    # ---------- Lifecycle ----------

    async def initialize(self) -> None:
        """Initialize every sink concurrently; the first failure is raised after all settle."""
        if self._closed:
            raise PipelineStateError("Pipeline is closed")
        if self._initialized:
            return

        outcomes = await self._gather(sink.initialize() for sink in self.sinks)
        failures = [(i, o) for i, o in enumerate(outcomes) if isinstance(o, BaseException)]
        for index, error in failures:
            self.log.error(
                "Sink initialization failed: sink=%s target=%s error=%s",
                self.sink_id(index),
                self.sinks[index].describe(),
                error,
            )
        if failures:
            index, error = failures[0]
            if isinstance(error, SinkInitializationError) or not isinstance(error, Exception):
                raise error
            raise SinkInitializationError(f"{self.sinks[index].describe()}: {error}") from error

        self._initialized = True
        self.log.info("Pipeline initialized: outputs=%d batch_size=%d", len(self.sinks), self.batch_size)

    async def process(self, records: Sequence[Record]) -> PipelineResult:
        """
        Write records to all sinks in chunks.

        Args:
            records: Records in the order they should be delivered.

        Returns:
            Totals for this call plus one aggregated BatchResult per sink.
        """
        self._ensure_ready()
        result = PipelineResult()
        if not records:
            return result

        if not self.sinks:
            self.log.warning("Pipeline has no enabled outputs; %d records were not written", len(records))
            return result

        delivered = 0
        for chunk_index, chunk in enumerate(chunked(records, self.batch_size), start=1):
            if self._shutdown_requested:
                result.records_skipped = len(records) - delivered
                self.log.warning(
                    "Shutdown requested: chunk=%d skipped_records=%d",
                    chunk_index,
                    result.records_skipped,
                )
                break

            chunk_results = await self._gather(
                self._write_to_sink(index, sink, chunk, chunk_index) for index, sink in enumerate(self.sinks)
            )
            for index, chunk_result in enumerate(chunk_results):
                result.add(self.sink_id(index), chunk_result)

            delivered += len(chunk)
            result.chunks += 1
            self.log.info(
                "Chunk written: index=%d size=%d processed=%d errors=%d",
                chunk_index,
                len(chunk),
                sum(r.processed_count for r in chunk_results),
                sum(r.error_count for r in chunk_results),
            )

        return result

    async def flush(self) -> None:
        self._ensure_ready()
        outcomes = await self._gather(sink.flush() for sink in self.sinks)
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        if errors:
            raise errors[0]

    async def health_check(self) -> Dict[str, bool]:
        """Probe every sink; a probe that raises reports False."""
        outcomes = await self._gather(sink.health_check() for sink in self.sinks)
        return {
            self.sink_id(i): (outcome is True)
            for i, outcome in enumerate(outcomes)
        }

    def request_shutdown(self) -> None:
        """Stop starting new chunks; the chunk in flight still completes."""
        self._shutdown_requested = True

    async def close(self) -> None:
        """Close every sink exactly once, then raise SinkCloseError if any failed."""
        if self._closed:
            return
        self._closed = True
        self._shutdown_requested = True

        outcomes = await self._gather(sink.close() for sink in self.sinks)
        errors: List[BaseException] = []
        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, BaseException):
                self.log.error("Sink close failed: sink=%s error=%s", self.sink_id(index), outcome)
                errors.append(outcome)

        self.log.info("Pipeline closed: outputs=%d close_errors=%d", len(self.sinks), len(errors))
        if errors:
            raise SinkCloseError(errors)

    async def __aenter__(self) -> "Pipeline":
        try:
            await self.initialize()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ---------- Internals ----------

    def _ensure_ready(self) -> None:
        if self._closed:
            raise PipelineStateError("Pipeline is closed")
        if not self._initialized:
            raise PipelineStateError("Pipeline.initialize() must be called before process()")

    async def _write_to_sink(self, index: int, sink: Sink, chunk: List[Record], chunk_index: int) -> BatchResult:
        try:
            validated = await sink.validate(chunk)
            return await sink.write(validated)
        except Exception as e:
            self.log.error(
                "Output write failed: sink=%s target=%s chunk=%d size=%d error=%s",
                self.sink_id(index),
                sink.describe(),
                chunk_index,
                len(chunk),
                e,
            )
            return BatchResult.failed(len(chunk), e)

    async def _gather(self, awaitables: Any) -> List[Any]:
        """Run awaitables concurrently and wait for all of them, collecting exceptions as values."""
        pending: List[Awaitable[Any]] = list(awaitables)
        if not pending:
            return []
        return list(await asyncio.gather(*pending, return_exceptions=True))
