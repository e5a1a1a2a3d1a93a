from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

Record = Dict[str, Any]


@dataclass
class BatchResult:
    """Outcome of one sink write call."""

    success: bool
    processed_count: int = 0
    error_count: int = 0
    errors: List[BaseException] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "BatchResult":
        return cls(success=True)

    @classmethod
    def ok(cls, processed: int) -> "BatchResult":
        return cls(success=True, processed_count=processed)

    @classmethod
    def failed(cls, count: int, error: BaseException) -> "BatchResult":
        """Result for a batch where every row failed with the same error."""
        return cls(success=False, processed_count=0, error_count=count, errors=[error])

    def merge(self, other: "BatchResult") -> "BatchResult":
        """Sum two results, e.g. the same sink across consecutive chunks."""
        return BatchResult(
            success=self.success and other.success,
            processed_count=self.processed_count + other.processed_count,
            error_count=self.error_count + other.error_count,
            errors=[*self.errors, *other.errors],
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "processed_count": self.processed_count,
            "error_count": self.error_count,
            "errors": [f"{type(e).__name__}: {e}" for e in self.errors],
        }


@dataclass
class PipelineResult:
    """Aggregated outcome of a single Pipeline.process() call."""

    total_processed: int = 0
    total_errors: int = 0
    output_results: Dict[str, BatchResult] = field(default_factory=dict)
    chunk_results: Dict[str, List[BatchResult]] = field(default_factory=dict)
    chunks: int = 0
    records_skipped: int = 0

    def add(self, sink_id: str, result: BatchResult) -> None:
        """Fold one sink's result for one chunk into the totals."""
        self.total_processed += result.processed_count
        self.total_errors += result.error_count
        self.chunk_results.setdefault(sink_id, []).append(result)

        existing = self.output_results.get(sink_id)
        self.output_results[sink_id] = result if existing is None else existing.merge(result)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "total_errors": self.total_errors,
            "chunks": self.chunks,
            "records_skipped": self.records_skipped,
            "output_results": {k: v.as_dict() for k, v in self.output_results.items()},
        }
