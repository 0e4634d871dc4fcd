import pytest

from facegate.errors import MemberNotFoundError
from facegate.session.attendance import CsvAttendanceSink


def test_csv_sink_appends_rows(tmp_path):
    sink = CsvAttendanceSink(tmp_path / "logs" / "attendance.csv", "org-1")
    assert sink.read().empty
    sink.record_match("m1", 0.9731)
    sink.record_match("m1", 0.95)
    df = sink.read()
    assert list(df.columns) == CsvAttendanceSink.COLUMNS
    assert df["member_id"].tolist() == ["m1", "m1"]
    assert df["confidence"].tolist() == pytest.approx([0.9731, 0.95])
    assert set(df["organization_id"]) == {"org-1"}


def test_unknown_member_raises(tmp_path):
    sink = CsvAttendanceSink(tmp_path / "attendance.csv", "org-1", member_exists=lambda member_id: member_id == "m1")
    sink.record_match("m1", 0.99)
    with pytest.raises(MemberNotFoundError):
        sink.record_match("ghost", 0.99)
    assert len(sink.read()) == 1
