"""Tests for the daily CSV writer."""
import csv
import io
import os
import threading

from conftest import read_lines
from csv_writer import (
    BLE_HEADER,
    VITALS_HEADER,
    DailyCsvWriter,
    MemoryHeaderRegistry,
    escape_csv_field,
    sanitize_id,
    to_csv_line,
)
from metrics import metrics


def test_escape_csv_field():
    assert escape_csv_field("plain") == "plain"
    assert escape_csv_field('a,b"c') == '"a,b""c"'
    assert escape_csv_field("two\nlines") == '"two\nlines"'
    assert escape_csv_field(None) == ""
    assert escape_csv_field(72) == "72"


def test_csv_line_round_trips_through_csv_reader():
    cells = ["2024-05-01 10:00:00", 'a,b"c', "line\nbreak", "", "42"]
    line = to_csv_line(cells)
    assert line.endswith("\n")
    parsed = next(csv.reader(io.StringIO(line)))
    assert parsed == cells


def test_sanitize_id():
    assert sanitize_id("AA:BB:CC:DD:EE:FF") == "AA-BB-CC-DD-EE-FF"
    assert sanitize_id("hub/1 main") == "hub_1_main"
    assert sanitize_id("../etc") == ".._etc"
    assert sanitize_id("") == "unknown"
    assert sanitize_id("   ") == "unknown"
    assert sanitize_id(None) == "unknown"


def test_file_naming(csv_writer, csv_dir):
    path = csv_writer.file_path("hub", "aa:bb", "2024-05-01")
    assert path == os.path.join(str(csv_dir), "hub_aa-bb_2024-05-01.csv")


def test_header_written_once(csv_writer):
    assert csv_writer.append_row("hub", "h1", "2024-05-01", VITALS_HEADER, ["t1", 1, 2, 3, 4, 5])
    assert csv_writer.append_row("hub", "h1", "2024-05-01", VITALS_HEADER, ["t2", 1, 2, 3, 4, 5])

    lines = read_lines(csv_writer.file_path("hub", "h1", "2024-05-01"))
    assert lines == [VITALS_HEADER, "t1,1,2,3,4,5", "t2,1,2,3,4,5"]
    assert metrics.csv_rows_written["hub"] == 2


def test_concurrent_first_writes_produce_one_header(csv_writer):
    def write_rows(worker):
        for i in range(25):
            csv_writer.append_row("device", "aa:bb", "2024-05-01", BLE_HEADER, [f"w{worker}-{i}", 1, 2, 3, 4, 5])

    threads = [threading.Thread(target=write_rows, args=(n,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    lines = read_lines(csv_writer.file_path("device", "aa:bb", "2024-05-01"))
    assert lines[0] == BLE_HEADER
    assert lines.count(BLE_HEADER) == 1
    assert len(lines) == 101


def test_existing_file_from_previous_run_gets_no_second_header(csv_dir):
    os.makedirs(csv_dir)
    path = csv_dir / "hub_h1_2024-05-01.csv"
    path.write_text(VITALS_HEADER + "\nold,1,2,3,4,5\n", encoding="utf-8")

    writer = DailyCsvWriter(str(csv_dir))
    assert writer.append_row("hub", "h1", "2024-05-01", VITALS_HEADER, ["new", 1, 2, 3, 4, 5])

    assert read_lines(path) == [VITALS_HEADER, "old,1,2,3,4,5", "new,1,2,3,4,5"]


def test_empty_existing_file_gets_header(csv_dir):
    os.makedirs(csv_dir)
    path = csv_dir / "hub_h1_2024-05-01.csv"
    path.write_text("", encoding="utf-8")

    writer = DailyCsvWriter(str(csv_dir))
    writer.append_row("hub", "h1", "2024-05-01", VITALS_HEADER, ["t", 1, 2, 3, 4, 5])

    assert read_lines(path) == [VITALS_HEADER, "t,1,2,3,4,5"]


def test_shared_header_registry_is_used(csv_dir):
    registry = MemoryHeaderRegistry()
    writer = DailyCsvWriter(str(csv_dir), header_registry=registry)
    writer.append_row("hub", "h1", "2024-05-01", VITALS_HEADER, ["t", 1, 2, 3, 4, 5])

    assert registry.contains(writer.file_path("hub", "h1", "2024-05-01"))
    assert len(registry) == 1


def test_write_failure_is_reported_not_raised(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")

    writer = DailyCsvWriter(str(blocker))
    assert writer.append_row("hub", "h1", "2024-05-01", VITALS_HEADER, ["t", 1, 2, 3, 4, 5]) is False
    assert metrics.csv_rows_failed["hub"] == 1
    assert metrics.csv_rows_written["hub"] == 0


def test_append_rows_splits_by_date(csv_writer):
    written = csv_writer.append_rows("hub", "h1", VITALS_HEADER, [
        ("2024-05-01", ["2024-05-01 23:59:59", 1, 2, 3, 4, 5]),
        ("2024-05-02", ["2024-05-02 00:00:00", 1, 2, 3, 4, 5]),
    ])
    assert written == 2
    assert read_lines(csv_writer.file_path("hub", "h1", "2024-05-01"))[1].startswith("2024-05-01 23:59:59")
    assert read_lines(csv_writer.file_path("hub", "h1", "2024-05-02"))[1].startswith("2024-05-02 00:00:00")
