"""Attendance sinks receiving accepted matches."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Optional, Protocol

import pandas as pd

from facegate.errors import MemberNotFoundError
from facegate.io_utils import ensure_dir

LOGGER = logging.getLogger("facegate.session.attendance")


class AttendanceSink(Protocol):
    def record_match(self, member_id: str, confidence: float) -> None:
        ...


class CsvAttendanceSink:
    """Appends one CSV row per recorded match.

    Duplicate rows are expected; consumers de-duplicate by member and time window.
    When `member_exists` is given, unknown members raise MemberNotFoundError the
    way a foreign-key violation would in a database-backed sink.
    """

    COLUMNS = ["timestamp", "organization_id", "member_id", "confidence"]

    def __init__(
        self,
        path: Path,
        organization_id: str,
        member_exists: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self.path = Path(path)
        self.organization_id = organization_id
        self.member_exists = member_exists
        self._lock = threading.Lock()

    def record_match(self, member_id: str, confidence: float) -> None:
        if self.member_exists is not None and not self.member_exists(member_id):
            raise MemberNotFoundError(member_id)
        row = pd.DataFrame(
            [
                {
                    "timestamp": pd.Timestamp.now(tz="UTC").isoformat(),
                    "organization_id": self.organization_id,
                    "member_id": member_id,
                    "confidence": round(float(confidence), 4),
                }
            ],
            columns=self.COLUMNS,
        )
        with self._lock:
            ensure_dir(self.path.parent)
            row.to_csv(self.path, mode="a", header=not self.path.exists(), index=False)
        LOGGER.debug("Recorded attendance for %s (%.3f)", member_id, confidence)

    def read(self) -> pd.DataFrame:
        if not self.path.exists():
            return pd.DataFrame(columns=self.COLUMNS)
        return pd.read_csv(self.path, dtype={"member_id": str, "organization_id": str})
