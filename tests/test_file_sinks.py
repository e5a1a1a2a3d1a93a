"""
Tests for CSV and JSONL sinks: quoting, templating, header policy and write modes.
"""

import csv
import json
import os
import shutil
import tempfile
import unittest
from datetime import date

from scrape_pipeline.core.errors import (
    ConfigurationError,
    PipelineStateError,
    RecordShapeError,
    SinkInitializationError,
)
from scrape_pipeline.core.pipeline import Pipeline
from scrape_pipeline.sinks.csv_sink import CsvSink, format_field
from scrape_pipeline.sinks.file_sink import resolve_output_path
from scrape_pipeline.sinks.jsonl_sink import JsonlSink


class TestFormatField(unittest.TestCase):
    def test_plain_values_are_not_quoted(self):
        self.assertEqual(format_field("plain"), "plain")
        self.assertEqual(format_field(42), "42")
        self.assertEqual(format_field(None), "")

    def test_quoting_rules(self):
        self.assertEqual(format_field("x,y"), '"x,y"')
        self.assertEqual(format_field('He said "hi"'), '"He said ""hi"""')
        self.assertEqual(format_field("line1\nline2"), '"line1\nline2"')
        self.assertEqual(format_field("a\rb"), '"a\rb"')
        self.assertEqual(format_field(" lead"), '" lead"')
        self.assertEqual(format_field("trail "), '"trail "')
        self.assertEqual(format_field("in side"), "in side")

    def test_custom_delimiter(self):
        self.assertEqual(format_field("a;b", ";"), '"a;b"')
        self.assertEqual(format_field("a,b", ";"), "a,b")


class TestResolveOutputPath(unittest.TestCase):
    def test_date_and_scraper_placeholders(self):
        path = resolve_output_path("./exports", "export-{date}-{scraper}.csv", "demo")
        self.assertIn(date.today().strftime("%Y-%m-%d"), str(path))
        self.assertIn("demo", path.name)
        self.assertEqual(path.parent.name, "exports")

    def test_timestamp_is_epoch_millis(self):
        path = resolve_output_path("out", "export-{timestamp}.csv")
        stamp = path.stem.split("-", 1)[1]
        self.assertTrue(stamp.isdigit())
        self.assertEqual(len(stamp), 13)

    def test_missing_scraper_name_uses_unknown(self):
        self.assertEqual(resolve_output_path("out", "{scraper}.csv").name, "unknown.csv")


class FileSinkTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _read_rows(self, path):
        with open(path, "r", encoding="utf-8", newline="") as f:
            return list(csv.reader(f))


class TestCsvSink(FileSinkTestCase):
    def _sink(self, **settings) -> CsvSink:
        base = {"path": os.path.join(self.temp_dir, "nested", "dir"), "filename": "out.csv"}
        base.update(settings)
        return CsvSink(base)

    async def test_round_trip_of_quoted_fields(self):
        sink = self._sink()
        await sink.initialize()
        records = [{"a": "x,y", "b": 'He said "hi"'}]

        result = await sink.write(records)
        await sink.close()

        self.assertTrue(result.success)
        self.assertEqual(result.processed_count, 1)
        with open(sink.file_path, "r", encoding="utf-8", newline="") as f:
            raw = f.read()
        self.assertEqual(raw, 'a,b\n"x,y","He said ""hi"""\n')
        self.assertEqual(self._read_rows(sink.file_path), [["a", "b"], ["x,y", 'He said "hi"']])

    async def test_creates_parent_directories_and_templated_name(self):
        sink = self._sink(filename="export-{date}-{scraper}.csv", scraper_name="demo")
        await sink.initialize()
        await sink.close()

        self.assertTrue(sink.file_path.exists())
        self.assertIn("demo", sink.file_path.name)
        self.assertIn(date.today().isoformat(), sink.file_path.name)

    async def test_header_written_once_across_batches(self):
        sink = self._sink()
        await sink.initialize()
        await sink.write([{"id": 1, "name": "a"}])
        await sink.write([{"id": 2, "name": "b"}])
        await sink.close()

        self.assertEqual(self._read_rows(sink.file_path), [["id", "name"], ["1", "a"], ["2", "b"]])

    async def test_headers_disabled(self):
        sink = self._sink(headers=False)
        await sink.initialize()
        await sink.write([{"id": 1, "name": None}])
        await sink.close()

        self.assertEqual(self._read_rows(sink.file_path), [["1", ""]])

    async def test_values_follow_header_order_and_missing_keys_are_empty(self):
        sink = self._sink()
        await sink.initialize()
        result = await sink.write([{"id": 1, "name": "a", "price": 3}, {"price": 5, "id": 2}])
        await sink.close()

        self.assertEqual(result.processed_count, 2)
        self.assertEqual(
            self._read_rows(sink.file_path),
            [["id", "name", "price"], ["1", "a", "3"], ["2", "", "5"]],
        )

    async def test_rows_with_unknown_keys_are_rejected(self):
        sink = self._sink()
        await sink.initialize()
        result = await sink.write([{"id": 1}, {"id": 2, "extra": "x"}, {"id": 3}])
        await sink.close()

        self.assertFalse(result.success)
        self.assertEqual(result.processed_count, 2)
        self.assertEqual(result.error_count, 1)
        self.assertIsInstance(result.errors[0], RecordShapeError)
        self.assertIn("extra", str(result.errors[0]))
        self.assertEqual(self._read_rows(sink.file_path), [["id"], ["1"], ["3"]])

    async def test_custom_delimiter(self):
        sink = self._sink(delimiter=";")
        await sink.initialize()
        await sink.write([{"a": "x;y", "b": "x,y"}])
        await sink.close()

        with open(sink.file_path, "r", encoding="utf-8", newline="") as f:
            self.assertEqual(f.read(), 'a;b\n"x;y";x,y\n')

    async def test_append_mode_reuses_existing_header(self):
        first = self._sink(write_mode="append")
        await first.initialize()
        await first.write([{"id": 1, "name": "a"}])
        await first.close()

        second = self._sink(write_mode="append")
        await second.initialize()
        await second.write([{"name": "b", "id": 2}])
        await second.close()

        self.assertEqual(self._read_rows(second.file_path), [["id", "name"], ["1", "a"], ["2", "b"]])

    async def test_overwrite_mode_truncates(self):
        for value in ("first", "second"):
            sink = self._sink()
            await sink.initialize()
            await sink.write([{"v": value}])
            await sink.close()

        self.assertEqual(self._read_rows(sink.file_path), [["v"], ["second"]])

    async def test_empty_write_does_not_touch_file(self):
        sink = self._sink()
        result = await sink.write([])
        self.assertTrue(result.success)
        self.assertEqual((result.processed_count, result.error_count), (0, 0))

    async def test_write_before_initialize_raises(self):
        with self.assertRaises(PipelineStateError):
            await self._sink().write([{"id": 1}])

    async def test_close_is_safe_without_initialize_and_twice(self):
        sink = self._sink()
        await sink.close()
        await sink.initialize()
        await sink.close()
        await sink.close()

    async def test_flush_makes_rows_visible_before_close(self):
        sink = self._sink()
        await sink.initialize()
        await sink.write([{"id": 1}])
        await sink.flush()

        self.assertEqual(self._read_rows(sink.file_path), [["id"], ["1"]])
        await sink.close()

    async def test_unencodable_row_is_rejected_alone(self):
        sink = self._sink(encoding="latin-1")
        await sink.initialize()
        result = await sink.write([{"t": "ok"}, {"t": "snow ☃"}, {"t": "fine"}])
        await sink.close()

        self.assertFalse(result.success)
        self.assertEqual((result.processed_count, result.error_count), (2, 1))
        self.assertIsInstance(result.errors[0], UnicodeEncodeError)
        with open(sink.file_path, "r", encoding="latin-1", newline="") as f:
            self.assertEqual(list(csv.reader(f)), [["t"], ["ok"], ["fine"]])

    async def test_columns_come_from_first_non_empty_record(self):
        sink = self._sink()
        await sink.initialize()
        first = await sink.write([{}])
        second = await sink.write([{"a": 1}, {"a": 2}, {}])
        await sink.close()

        self.assertEqual((first.processed_count, first.error_count), (0, 1))
        self.assertIsInstance(first.errors[0], RecordShapeError)
        self.assertEqual((second.processed_count, second.error_count), (3, 0))
        self.assertEqual(self._read_rows(sink.file_path), [["a"], ["1"], ["2"], []])

    async def test_initialize_twice_keeps_the_open_file(self):
        sink = self._sink()
        await sink.initialize()
        handle = sink._fh

        await sink.initialize()

        self.assertIs(sink._fh, handle)
        await sink.close()
        self.assertTrue(handle.closed)

    async def test_pipeline_retry_after_partial_initialize_does_not_reopen(self):
        blocker = os.path.join(self.temp_dir, "blocker")
        with open(blocker, "w", encoding="utf-8") as f:
            f.write("not a directory")
        good = self._sink()
        bad = CsvSink({"path": os.path.join(blocker, "sub"), "filename": "out.csv"})
        pipeline = Pipeline([good, bad])

        with self.assertRaises(SinkInitializationError):
            await pipeline.initialize()
        handle = good._fh
        with self.assertRaises(SinkInitializationError):
            await pipeline.initialize()

        self.assertIsNotNone(handle)
        self.assertIs(good._fh, handle)
        await pipeline.close()
        self.assertTrue(handle.closed)

    def test_invalid_delimiter_is_configuration_error(self):
        with self.assertRaises(ConfigurationError):
            CsvSink({"delimiter": ",,"})

    def test_invalid_write_mode_is_configuration_error(self):
        with self.assertRaises(ConfigurationError) as cm:
            CsvSink({"write_mode": "replace"})
        self.assertIn("write_mode", str(cm.exception))


class TestJsonlSink(FileSinkTestCase):
    async def test_writes_one_object_per_line(self):
        sink = JsonlSink({"path": self.temp_dir, "filename": "{scraper}.jsonl", "scraper_name": "books"})
        await sink.initialize()
        result = await sink.write([{"title": "Ünïcode", "n": 1}, {"title": "b", "tags": ["x"]}])
        await sink.close()

        self.assertEqual(result.processed_count, 2)
        self.assertEqual(sink.file_path.name, "books.jsonl")
        with open(sink.file_path, "r", encoding="utf-8") as f:
            lines = f.read().splitlines()
        self.assertEqual(json.loads(lines[0]), {"title": "Ünïcode", "n": 1})
        self.assertIn("Ünïcode", lines[0])
        self.assertEqual(len(lines), 2)

    async def test_unserializable_record_is_a_row_error(self):
        sink = JsonlSink({"path": self.temp_dir, "filename": "out.jsonl"})
        await sink.initialize()
        result = await sink.write([{"ok": 1}, {"bad": {1, 2}}, {"ok": 2}])
        await sink.close()

        self.assertFalse(result.success)
        self.assertEqual((result.processed_count, result.error_count), (2, 1))
        self.assertIsInstance(result.errors[0], TypeError)
        with open(sink.file_path, "r", encoding="utf-8") as f:
            self.assertEqual(len(f.read().splitlines()), 2)

    async def test_unencodable_record_is_a_row_error(self):
        sink = JsonlSink({"path": self.temp_dir, "filename": "out.jsonl", "encoding": "ascii"})
        await sink.initialize()
        result = await sink.write([{"t": "ok"}, {"t": "café"}, {"t": "fine"}])
        await sink.close()

        self.assertEqual((result.processed_count, result.error_count), (2, 1))
        self.assertIsInstance(result.errors[0], UnicodeEncodeError)
        with open(sink.file_path, "r", encoding="ascii") as f:
            self.assertEqual([json.loads(line)["t"] for line in f], ["ok", "fine"])


if __name__ == "__main__":
    unittest.main()
