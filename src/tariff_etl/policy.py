"""tariff_etl.policy

Import policy: chunking, retry, timeout and matching knobs for one import.

Defaults are compiled in (DEFAULT_POLICY).  A YAML file may override any
subset of them:

    chunk_size: 50
    chunk_pause_seconds: 0.05
    statement_timeout_ms: 30000
    min_match_confidence: 0.0
    exclude_invalid_rows: false
    retry:
      max_attempts: 1
      backoff_seconds: 1.0
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

_TOP_LEVEL_KEYS = frozenset({
    "chunk_size",
    "chunk_pause_seconds",
    "statement_timeout_ms",
    "min_match_confidence",
    "exclude_invalid_rows",
    "retry",
})
_RETRY_KEYS = frozenset({"max_attempts", "backoff_seconds"})


class PolicyValidationError(ValueError):
    """Raised when a YAML policy file fails validation."""


@dataclass(frozen=True)
class RetryPolicy:
    """Linear backoff: attempt n (1-based) waits backoff_seconds * n before retrying."""

    max_attempts: int = 1
    backoff_seconds: float = 1.0

    def delay(self, attempt: int) -> float:
        return self.backoff_seconds * attempt

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts


@dataclass(frozen=True)
class ImportPolicy:
    chunk_size: int = 50
    chunk_pause_seconds: float = 0.05
    statement_timeout_ms: int = 30000
    min_match_confidence: float = 0.0
    exclude_invalid_rows: bool = False
    retry: RetryPolicy = field(default_factory=RetryPolicy)


DEFAULT_POLICY = ImportPolicy()


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _number(data: dict[str, Any], key: str, kind: type) -> Any:
    val = data[key]
    if isinstance(val, bool):
        raise PolicyValidationError(f"'{key}' value {val!r} is not numeric.")
    try:
        return kind(val)
    except (TypeError, ValueError):
        raise PolicyValidationError(f"'{key}' value {val!r} is not numeric.")


def validate_policy(data: dict[str, Any]) -> None:
    """Raise PolicyValidationError if data is not a valid policy override."""
    if not isinstance(data, dict):
        raise PolicyValidationError("YAML root must be a mapping.")

    unknown = set(data) - _TOP_LEVEL_KEYS
    if unknown:
        raise PolicyValidationError(f"Unknown policy keys: {sorted(unknown)}")

    if "chunk_size" in data and _number(data, "chunk_size", int) < 1:
        raise PolicyValidationError("'chunk_size' must be >= 1.")
    if "chunk_pause_seconds" in data and _number(data, "chunk_pause_seconds", float) < 0:
        raise PolicyValidationError("'chunk_pause_seconds' must be >= 0.")
    if "statement_timeout_ms" in data and _number(data, "statement_timeout_ms", int) < 0:
        raise PolicyValidationError("'statement_timeout_ms' must be >= 0 (0 disables).")
    if "min_match_confidence" in data:
        conf = _number(data, "min_match_confidence", float)
        if not (0.0 <= conf <= 1.0):
            raise PolicyValidationError(
                f"'min_match_confidence' value {conf} must be in [0.0, 1.0]."
            )
    if "exclude_invalid_rows" in data and not isinstance(data["exclude_invalid_rows"], bool):
        raise PolicyValidationError("'exclude_invalid_rows' must be true or false.")

    retry = data.get("retry")
    if retry is None:
        return
    if not isinstance(retry, dict):
        raise PolicyValidationError("'retry' must be a mapping.")
    unknown = set(retry) - _RETRY_KEYS
    if unknown:
        raise PolicyValidationError(f"Unknown retry keys: {sorted(unknown)}")
    if "max_attempts" in retry and _number(retry, "max_attempts", int) < 1:
        raise PolicyValidationError("'max_attempts' must be >= 1.")
    if "backoff_seconds" in retry and _number(retry, "backoff_seconds", float) < 0:
        raise PolicyValidationError("'backoff_seconds' must be >= 0.")


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def policy_from_dict(data: dict[str, Any], base: ImportPolicy = DEFAULT_POLICY) -> ImportPolicy:
    validate_policy(data)
    retry = base.retry
    if data.get("retry"):
        r = data["retry"]
        retry = RetryPolicy(
            max_attempts=int(r.get("max_attempts", retry.max_attempts)),
            backoff_seconds=float(r.get("backoff_seconds", retry.backoff_seconds)),
        )
    return replace(
        base,
        chunk_size=int(data.get("chunk_size", base.chunk_size)),
        chunk_pause_seconds=float(data.get("chunk_pause_seconds", base.chunk_pause_seconds)),
        statement_timeout_ms=int(data.get("statement_timeout_ms", base.statement_timeout_ms)),
        min_match_confidence=float(data.get("min_match_confidence", base.min_match_confidence)),
        exclude_invalid_rows=bool(data.get("exclude_invalid_rows", base.exclude_invalid_rows)),
        retry=retry,
    )


def load_policy(yaml_path: Path) -> ImportPolicy:
    """Load a YAML policy file on top of DEFAULT_POLICY.

    Raises:
        PolicyValidationError: If a key is unknown or a value is out of range.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = Path(yaml_path).read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    if data is None:
        return DEFAULT_POLICY
    return policy_from_dict(data)
