import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from scrape_pipeline.config_models import JsonlSinkSettings, parse_sink_settings
from scrape_pipeline.core.models import Record
from scrape_pipeline.sinks.file_sink import FileSink


class JsonlSink(FileSink):
    """Sink that writes records to a JSONL (JSON Lines) file."""

    sink_type = "jsonl"

    def __init__(self, settings: Dict[str, Any], logger: Optional[logging.Logger] = None):
        super().__init__(parse_sink_settings(JsonlSinkSettings, settings, self.sink_type), logger)

    def _render(self, records: List[Record]) -> Tuple[str, int, List[Exception]]:
        """One JSON object per line; rows that fail to serialize are reported, not written."""
        lines: List[str] = []
        errors: List[Exception] = []
        for record in records:
            try:
                line = json.dumps(record, ensure_ascii=False) + "\n"
            except (TypeError, ValueError) as e:
                errors.append(e)
                continue
            encoding_error = self._encoding_error(line)
            if encoding_error is not None:
                errors.append(encoding_error)
                continue
            lines.append(line)
        return "".join(lines), len(lines), errors
