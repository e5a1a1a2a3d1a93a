from __future__ import annotations

import csv
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from scrape_pipeline.config_models import CsvSinkSettings, parse_sink_settings
from scrape_pipeline.core.errors import RecordShapeError
from scrape_pipeline.core.models import Record
from scrape_pipeline.sinks.file_sink import FileSink


def format_field(value: Any, delimiter: str = ",") -> str:
    """
    Serialize one CSV cell.

    A value is quoted (inner quotes doubled) only when it contains the
    delimiter, a double quote, CR or LF, or starts/ends with a space.
    """
    if value is None:
        return ""

    text = str(value)
    needs_quoting = (
        delimiter in text
        or '"' in text
        or "\n" in text
        or "\r" in text
        or text.startswith(" ")
        or text.endswith(" ")
    )
    if needs_quoting:
        return '"' + text.replace('"', '""') + '"'
    return text


class CsvSink(FileSink):
    """
    Sink that writes records to a delimited text file.

    The column layout is fixed by the first non-empty record of the run.
    Values are looked up by column name, so later records may order keys
    freely and missing keys render as empty cells. A record with keys outside
    the layout, an empty record seen before any layout exists, or a row the
    file encoding cannot represent is rejected and reported as a row error.
    """

    sink_type = "csv"

    def __init__(self, settings: Dict[str, Any], logger: Optional[logging.Logger] = None):
        super().__init__(parse_sink_settings(CsvSinkSettings, settings, self.sink_type), logger)
        self.columns: Optional[List[str]] = None
        self._header_written = False

    def _render(self, records: List[Record]) -> Tuple[str, int, List[Exception]]:
        delimiter = self.settings.delimiter
        if self.columns is None:
            first = next((r for r in records if isinstance(r, Mapping) and r), None)
            if first is not None:
                self.columns = [str(k) for k in first.keys()]

        columns = self.columns or []
        known = set(columns)
        lines: List[str] = []
        errors: List[Exception] = []

        if self.settings.headers and not self._header_written and columns:
            header = delimiter.join(format_field(c, delimiter) for c in columns) + "\n"
            header_error = self._encoding_error(header)
            if header_error is not None:
                # Without a header no row of this batch can be placed
                return "", 0, [header_error for _ in records]
            lines.append(header)

        written = 0
        for index, record in enumerate(records):
            if not isinstance(record, Mapping):
                errors.append(RecordShapeError(f"row {index}: expected a mapping, got {type(record).__name__}"))
                continue
            if not columns:
                errors.append(RecordShapeError(f"row {index}: no columns known yet for an empty record"))
                continue

            extra = [str(k) for k in record.keys() if str(k) not in known]
            if extra:
                errors.append(RecordShapeError(f"row {index}: keys not in header: {', '.join(extra)}"))
                continue

            values = {str(k): v for k, v in record.items()}
            line = delimiter.join(format_field(values.get(c), delimiter) for c in columns) + "\n"
            encoding_error = self._encoding_error(line)
            if encoding_error is not None:
                errors.append(encoding_error)
                continue
            lines.append(line)
            written += 1

        return "".join(lines), written, errors

    def _after_write(self) -> None:
        if self.columns:
            self._header_written = True

    def _load_existing(self, path: Path) -> None:
        if not self._file_has_content(path):
            return

        with open(path, "r", encoding=self.settings.encoding, newline="") as f:
            first_row = next(csv.reader(f, delimiter=self.settings.delimiter), [])

        if self.settings.headers and first_row:
            self.columns = first_row
            self._header_written = True
            self.log.info("CSV append: reusing header from %s columns=%d", path, len(first_row))
