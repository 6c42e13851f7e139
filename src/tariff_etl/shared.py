"""tariff_etl.shared

Shared utilities used across the tariff import stages.
Includes the error taxonomy, RejectWriter, and run-report writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import asdict, is_dataclass
from datetime import datetime
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class TariffImportError(Exception):
    """Base class for fatal tariff import errors."""


class StructuralFileError(TariffImportError):
    """Raised when the file cannot be read as a delimited or spreadsheet table."""


class EmptyFileError(StructuralFileError):
    """Raised when no data rows remain after the header."""


class MissingRequiredColumnError(TariffImportError):
    """Raised when the header lacks a column required by the detected schema.

    Carries the validation report so callers can show every missing column
    at once.
    """

    def __init__(self, missing: list[str], report: Any = None) -> None:
        super().__init__("; ".join(missing))
        self.missing = missing
        self.report = report


class BatchUpsertError(TariffImportError):
    """Raised inside the commit engine when one chunk fails to persist."""

    def __init__(self, chunk_index: int, cause: Exception) -> None:
        super().__init__(f"chunk {chunk_index + 1}: {type(cause).__name__}: {cause}")
        self.chunk_index = chunk_index
        self.cause = cause


class UnknownVersionError(TariffImportError):
    """Raised when an import version id does not exist for the tenant."""


class InvalidTransitionError(TariffImportError):
    """Raised when an import workflow event is not legal in the current step."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def _jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    return value


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    payload: dict[str, Any],
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **source_paths,
        **{k: _jsonable(v) for k, v in payload.items()},
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
