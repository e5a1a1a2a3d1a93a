from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from scrape_pipeline.core.models import BatchResult, Record
from scrape_pipeline.utils.logging import get_logger


class Sink(ABC):
    """
    Contract for output sinks.

    Lifecycle: initialize() once, write() any number of times, close() once.
    write() reports per-row data problems through BatchResult and only raises
    for unexpected faults (I/O errors, lost connections).
    """

    sink_type: str = "sink"

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.log = logger or get_logger(f"scrape_pipeline.sink.{self.sink_type}")

    @abstractmethod
    async def initialize(self) -> None:
        """Acquire the destination (file handle, connection pool)."""

    @abstractmethod
    async def write(self, records: List[Record]) -> BatchResult:
        """Append records to the destination."""

    async def flush(self) -> None:
        """Push buffered data to the medium. No-op for unbuffered sinks."""
        return None

    @abstractmethod
    async def close(self) -> None:
        """Release resources. Must tolerate a failed or missing initialize()."""

    async def validate(self, records: List[Record]) -> List[Record]:
        """Pre-write hook for filtering or correcting records."""
        return records

    async def health_check(self) -> bool:
        return True

    def describe(self) -> str:
        """Short destination description for logs."""
        return self.sink_type
