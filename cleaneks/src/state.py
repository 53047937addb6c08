from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from cleaneks.src.reconciler import ObservedResultRecord

LOGGER = logging.getLogger(__name__)


class StateError(RuntimeError):
    """Raised when the persisted state file cannot be parsed."""


class StateStore:
    """JSON file of observed records keyed by cluster endpoint.

    Records are overwritten wholesale on every save. Removing a record only
    forgets it locally; it never touches the cluster.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _read_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            document = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError as exc:
            raise StateError(f"State file {self.path} is not valid JSON: {exc}") from exc
        records = document.get("records", {}) if isinstance(document, dict) else None
        if not isinstance(records, dict):
            raise StateError(f"State file {self.path} has no 'records' mapping")
        return records

    def _write_all(self, records: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps({"records": records}, indent=2, sort_keys=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload + "\n")
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def load(self, record_id: str) -> ObservedResultRecord | None:
        raw = self._read_all().get(record_id)
        if raw is None:
            return None
        return ObservedResultRecord.from_dict(raw)

    def save(self, record: ObservedResultRecord) -> None:
        records = self._read_all()
        records[record.id] = record.to_dict()
        self._write_all(records)
        LOGGER.debug("Saved record %s to %s", record.id, self.path)

    def delete(self, record_id: str) -> bool:
        records = self._read_all()
        if records.pop(record_id, None) is None:
            return False
        self._write_all(records)
        LOGGER.info("Forgot record %s", record_id)
        return True
