from __future__ import annotations

import asyncio
import logging
import os
from abc import abstractmethod
from pathlib import Path
from typing import IO, List, Optional, Tuple

from scrape_pipeline.config_models import FileSinkSettings
from scrape_pipeline.core.errors import PipelineStateError, SinkInitializationError
from scrape_pipeline.core.models import BatchResult, Record
from scrape_pipeline.sinks.base import Sink
from scrape_pipeline.utils.time import epoch_millis, today_iso


def resolve_output_path(directory: str, filename: str, scraper_name: Optional[str] = None) -> Path:
    """
    Expand the file name template and join it to the output directory.

    Placeholders: {date} -> YYYY-MM-DD, {timestamp} -> epoch milliseconds,
    {scraper} -> producer name ("unknown" when not injected).
    """
    name = (
        filename.replace("{date}", today_iso())
        .replace("{timestamp}", str(epoch_millis()))
        .replace("{scraper}", scraper_name or "unknown")
    )
    return Path(directory) / name


class FileSink(Sink):
    """Base for sinks that stream rows into one text file per run."""

    def __init__(self, settings: FileSinkSettings, logger: Optional[logging.Logger] = None):
        super().__init__(logger)
        self.settings = settings
        self.file_path: Optional[Path] = None
        self._fh: Optional[IO[str]] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        if self._fh is not None and not self._fh.closed:
            return
        self.file_path = resolve_output_path(self.settings.path, self.settings.filename, self.settings.scraper_name)
        file_mode = "a" if self.settings.write_mode == "append" else "w"
        try:
            await asyncio.to_thread(self._ensure_parent_dir, self.file_path)
            if file_mode == "a":
                await asyncio.to_thread(self._load_existing, self.file_path)
            self._fh = await asyncio.to_thread(
                open, self.file_path, file_mode, encoding=self.settings.encoding, newline=""
            )
        except (OSError, LookupError) as e:
            raise SinkInitializationError(f"Cannot open {self.file_path}: {e}") from e

        self.log.info(
            "%s sink initialized: path=%s write_mode=%s",
            self.sink_type.upper(),
            self.file_path,
            self.settings.write_mode,
        )

    async def write(self, records: List[Record]) -> BatchResult:
        if not records:
            return BatchResult.empty()
        if self._fh is None:
            raise PipelineStateError(f"{self.sink_type} sink is not initialized")

        async with self._lock:
            payload, written, errors = self._render(records)
            if payload:
                await asyncio.to_thread(self._fh.write, payload)
                self._after_write()

        if errors:
            self.log.warning(
                "%s write rejected rows: path=%s rejected=%d first_error=%s",
                self.sink_type.upper(),
                self.file_path,
                len(errors),
                errors[0],
            )
        self.log.debug("%s write: path=%s rows=%d", self.sink_type.upper(), self.file_path, written)

        return BatchResult(
            success=not errors,
            processed_count=written,
            error_count=len(errors),
            errors=list(errors),
        )

    async def flush(self) -> None:
        if self._fh is None:
            return
        async with self._lock:
            await asyncio.to_thread(self._fh.flush)

    async def close(self) -> None:
        fh, self._fh = self._fh, None
        if fh is None or fh.closed:
            return
        await asyncio.to_thread(fh.close)
        self.log.info("%s sink closed: path=%s", self.sink_type.upper(), self.file_path)

    def describe(self) -> str:
        return f"{self.sink_type}:{self.file_path or self.settings.filename}"

    @abstractmethod
    def _render(self, records: List[Record]) -> Tuple[str, int, List[Exception]]:
        """Serialize records to text. Returns (payload, rows_rendered, row_errors)."""

    def _after_write(self) -> None:
        """Hook run once a rendered payload reached the file."""

    def _load_existing(self, path: Path) -> None:
        """Hook for append mode to pick up state from an existing file."""

    def _encoding_error(self, line: str) -> Optional[UnicodeEncodeError]:
        """Return the error raised when `line` cannot be stored in the file encoding."""
        try:
            line.encode(self.settings.encoding)
        except UnicodeEncodeError as e:
            return e
        return None

    def _file_has_content(self, path: Path) -> bool:
        return os.path.exists(path) and os.path.getsize(path) > 0

    def _ensure_parent_dir(self, path: Path) -> None:
        parent = Path(path).parent
        if str(parent) not in {"", "."}:
            parent.mkdir(parents=True, exist_ok=True)
