import json
import tempfile
import unittest
from pathlib import Path

import numpy as np

from handcall.attendance.errors import PersistError
from handcall.attendance.export import export_roster, parse_roster_export, write_export
from handcall.attendance.sink import CsvSink, JsonlSink, MemorySink, build_sink, read_confirmations
from handcall.attendance.snapshots import SnapshotWriter, build_snapshot_writer
from handcall.contracts.messages import ConfirmationEvent, Subject


def _event(identifier: str, seq: int, confirmed_at: float) -> ConfirmationEvent:
    return ConfirmationEvent(
        subject_identifier=identifier,
        display_name=f"Name {identifier}",
        confirmed_at=confirmed_at,
        t_ns=seq * 1000,
        seq=seq,
    )


class ExportTests(unittest.TestCase):
    def test_export_format(self) -> None:
        subjects = [Subject("S1", "Ada", "Present"), Subject("S2", "Bo")]
        self.assertEqual(
            export_roster(subjects),
            "Name, Identifier, Status\nAda, S1, Present\nBo, S2, Absent",
        )

    def test_empty_roster_exports_header_only(self) -> None:
        self.assertEqual(export_roster([]), "Name, Identifier, Status")

    def test_awkward_values_are_quoted_and_parse_back(self) -> None:
        subjects = [
            Subject("CSC/2021/001", 'Obi, "Ada"', "Present"),
            Subject("S2", "Bo"),
        ]
        text = export_roster(subjects)
        self.assertIn('"Obi, ""Ada"""', text)
        parsed = parse_roster_export(text)
        self.assertEqual([s.to_dict() for s in parsed], [s.to_dict() for s in subjects])

    def test_parse_rejects_foreign_header(self) -> None:
        with self.assertRaises(ValueError):
            parse_roster_export("id,name\n1,Ada")
        with self.assertRaises(ValueError):
            parse_roster_export("")

    def test_parse_defaults_missing_status(self) -> None:
        parsed = parse_roster_export("Name, Identifier\nAda, S1")
        self.assertEqual(parsed[0].status, "Absent")

    def test_write_export_creates_parent(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = write_export([Subject("S1", "Ada")], str(Path(td) / "out" / "list.csv"))
            self.assertEqual(path.read_text(encoding="utf-8"), "Name, Identifier, Status\nAda, S1, Absent")


class SinkTests(unittest.TestCase):
    def test_jsonl_sink_appends(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            sink = JsonlSink(str(Path(td) / "a" / "confirmations.jsonl"))
            sink.record(_event("S1", 1, 1_700_000_000.0))
            sink.record(_event("S2", 2, 1_700_000_005.0))
            lines = sink.path.read_text(encoding="utf-8").splitlines()
            self.assertEqual(len(lines), 2)
            first = json.loads(lines[0])
            self.assertEqual(first["subject_identifier"], "S1")
            self.assertEqual(first["source"], "hand")
            self.assertTrue(first["timestamp"].startswith("2023-11-14T22:13:20"))

    def test_csv_sink_writes_header_once(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "confirmations.csv"
            CsvSink(str(path)).record(_event("S1", 1, 1_700_000_000.0))
            CsvSink(str(path)).record(_event("S2", 2, 1_700_000_001.0))
            lines = path.read_text(encoding="utf-8").splitlines()
            self.assertEqual(lines[0], "timestamp,subject_identifier,display_name,source")
            self.assertEqual(len(lines), 3)

    def test_unwritable_path_raises_persist_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            blocker = Path(td) / "file"
            blocker.write_text("x", encoding="utf-8")
            sink = JsonlSink(str(blocker / "confirmations.jsonl"))
            with self.assertRaises(PersistError):
                sink.record(_event("S1", 1, 1_700_000_000.0))

    def test_report_is_newest_first(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            for kind in ("jsonl", "csv"):
                sink = build_sink({"attendance": {"sink": {"kind": kind}}}, run_dir=td)
                sink.record(_event("S1", 1, 1_700_000_000.0))
                sink.record(_event("S2", 2, 1_700_000_009.0))
                sink.record(_event("S3", 3, 1_700_000_009.0))
                ids = [r["subject_identifier"] for r in read_confirmations(str(sink.path))]
                self.assertEqual(ids, ["S3", "S2", "S1"], kind)

    def test_memory_sink(self) -> None:
        sink = MemorySink()
        sink.record(_event("S1", 1, 1.0))
        sink.record(_event("S2", 2, 2.0))
        self.assertEqual([e.seq for e in sink.events], [1, 2])
        self.assertEqual([r["subject_identifier"] for r in sink.read()], ["S2", "S1"])

    def test_build_sink_paths(self) -> None:
        sink = build_sink({"attendance": {"sink": {"kind": "csv"}}}, run_dir="/tmp/run1")
        self.assertEqual(sink.path, Path("/tmp/run1/attendance/confirmations.csv"))
        self.assertIsInstance(build_sink({"attendance": {"sink": {"kind": "memory"}}}), MemorySink)
        with self.assertRaises(ValueError):
            build_sink({"attendance": {"sink": {"kind": "sqlite"}}})

    def test_missing_report_file(self) -> None:
        self.assertEqual(read_confirmations("/nonexistent/confirmations.jsonl"), [])

    def test_jsonl_record_carries_snapshot_path(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            sink = JsonlSink(str(Path(td) / "confirmations.jsonl"))
            event = ConfirmationEvent("S1", "Ada", 1_700_000_000.0, 0, 1, snapshot_path="snaps/000001_S1.jpg")
            sink.record(event)
            sink.record(_event("S2", 2, 1_700_000_001.0))
            records = read_confirmations(str(sink.path))
        self.assertNotIn("snapshot_path", records[0])
        self.assertEqual(records[1]["snapshot_path"], "snaps/000001_S1.jpg")


class SnapshotWriterTests(unittest.TestCase):
    def test_writes_jpeg_named_by_seq_and_identifier(self) -> None:
        frame = np.zeros((16, 16, 3), dtype=np.uint8)
        with tempfile.TemporaryDirectory() as td:
            writer = SnapshotWriter(str(Path(td) / "snapshots"))
            out = writer.save("S/1", 3, frame)
            self.assertEqual(out.name, "000003_S_1.jpg")
            self.assertEqual(out.read_bytes()[:2], b"\xff\xd8")

    def test_missing_frame_raises_persist_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(PersistError):
                SnapshotWriter(td).save("S1", 1, None)

    def test_unwritable_directory_raises_persist_error(self) -> None:
        frame = np.zeros((8, 8, 3), dtype=np.uint8)
        with tempfile.TemporaryDirectory() as td:
            blocker = Path(td) / "file"
            blocker.write_text("x", encoding="utf-8")
            with self.assertRaises(PersistError):
                SnapshotWriter(str(blocker / "snapshots")).save("S1", 1, frame)

    def test_build_from_config(self) -> None:
        self.assertIsNone(build_snapshot_writer({"attendance": {}}, run_dir="/tmp/run1"))
        writer = build_snapshot_writer({"attendance": {"snapshots": {"enabled": True}}}, run_dir="/tmp/run1")
        self.assertEqual(writer.directory, Path("/tmp/run1/attendance/snapshots"))
        writer = build_snapshot_writer({"attendance": {"snapshots": {"enabled": True, "dir": "/tmp/snaps"}}})
        self.assertEqual(writer.directory, Path("/tmp/snaps"))


if __name__ == "__main__":
    unittest.main()
