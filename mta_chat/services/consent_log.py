"""Append-only newline-delimited JSON log of marketing-consent choices."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsentRecord:
    timestamp: str
    name: str
    email: str
    marketing_consent: bool
    requested_time: str

    @classmethod
    def create(
        cls,
        name: str,
        email: str,
        marketing_consent: bool,
        requested_time: str,
        now: datetime | None = None,
    ) -> ConsentRecord:
        now = now or datetime.now(UTC)
        return cls(
            timestamp=now.isoformat(),
            name=name,
            email=email,
            marketing_consent=marketing_consent,
            requested_time=requested_time,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "name": self.name,
            "email": self.email,
            "marketingConsent": self.marketing_consent,
            "requestedTime": self.requested_time,
        }


class ConsentLog:
    """One JSON object per line; lines are only ever appended."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def append(self, record: ConsentRecord) -> None:
        line = json.dumps(record.to_dict(), ensure_ascii=False)
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        logger.debug("Consent recorded for %s", record.email)

    def read_all(self) -> list[dict[str, Any]]:
        """Return every record, most recent first.  Unparseable lines are skipped."""
        if not self._path.exists():
            return []
        with self._lock:
            lines = self._path.read_text(encoding="utf-8").splitlines()

        records: list[dict[str, Any]] = []
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping malformed consent line %d in %s", lineno, self._path)
        records.reverse()
        return records
