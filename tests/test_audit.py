"""Tests for the CSV audit trail."""

import csv

from vreflect.tools.reflection.audit import FIELDNAMES, AuditTrail


def read_rows(path):
    with open(path, newline="", encoding="utf-8") as f:
        return list(csv.reader(f))


def test_header_written_once(tmp_path):
    path = tmp_path / "logs" / "average_grades.csv"
    trail = AuditTrail(path)

    trail.append(50.0, "added grade number 1 on loop 1 of grade 50 to verse GEN 1:1", 0.0, 0)
    AuditTrail(path).append(55.5, "reflected on verse GEN 1:1", 50.0, 1)

    rows = read_rows(path)
    assert rows[0] == FIELDNAMES
    assert len(rows) == 3
    assert rows[2][1:] == ["55.5", "reflected on verse GEN 1:1", "50.0", "1"]


def test_empty_file_gets_header(tmp_path):
    path = tmp_path / "average_grades.csv"
    path.write_text("", encoding="utf-8")

    AuditTrail(path).append(1.0, "x", 1.0, 0)

    assert read_rows(path)[0] == FIELDNAMES


def test_action_with_comma_is_quoted(tmp_path):
    path = tmp_path / "average_grades.csv"

    AuditTrail(path).append(1.0, "added 2 up to grade number 2 on loop 1 of grades [40, 60] to verse GEN 1:1",
                            1.0, 0)

    assert read_rows(path)[1][2] == "added 2 up to grade number 2 on loop 1 of grades [40, 60] to verse GEN 1:1"
