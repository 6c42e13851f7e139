"""Unit tests for tariff_etl.policy."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from tariff_etl.policy import (
    DEFAULT_POLICY,
    ImportPolicy,
    PolicyValidationError,
    RetryPolicy,
    load_policy,
    policy_from_dict,
    validate_policy,
)

PROJECT_ROOT = Path(__file__).parent.parent.parent

OVERRIDE_YAML = textwrap.dedent("""\
    chunk_size: 10
    min_match_confidence: 0.9
    retry:
      max_attempts: 4
""")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def override_yaml_path(tmp_path: Path) -> Path:
    p = tmp_path / "policy.yml"
    p.write_text(OVERRIDE_YAML, encoding="utf-8")
    return p


# ---------------------------------------------------------------------------
# Defaults / RetryPolicy
# ---------------------------------------------------------------------------

class TestDefaults:
    def test_default_values(self):
        assert DEFAULT_POLICY.chunk_size == 50
        assert DEFAULT_POLICY.chunk_pause_seconds == pytest.approx(0.05)
        assert DEFAULT_POLICY.statement_timeout_ms == 30000
        assert DEFAULT_POLICY.min_match_confidence == 0.0
        assert DEFAULT_POLICY.exclude_invalid_rows is False
        assert DEFAULT_POLICY.retry == RetryPolicy(max_attempts=1, backoff_seconds=1.0)

    def test_frozen(self):
        with pytest.raises(AttributeError):
            DEFAULT_POLICY.chunk_size = 5  # type: ignore[misc]


class TestRetryPolicy:
    def test_linear_backoff(self):
        retry = RetryPolicy(max_attempts=3, backoff_seconds=0.5)
        assert [retry.delay(n) for n in (1, 2, 3)] == [0.5, 1.0, 1.5]

    def test_should_retry(self):
        retry = RetryPolicy(max_attempts=3)
        assert retry.should_retry(1)
        assert retry.should_retry(2)
        assert not retry.should_retry(3)

    def test_single_attempt_never_retries(self):
        assert not RetryPolicy().should_retry(1)


# ---------------------------------------------------------------------------
# load_policy
# ---------------------------------------------------------------------------

class TestLoadPolicy:
    def test_override_keeps_other_defaults(self, override_yaml_path: Path):
        policy = load_policy(override_yaml_path)
        assert policy.chunk_size == 10
        assert policy.min_match_confidence == pytest.approx(0.9)
        assert policy.retry.max_attempts == 4
        assert policy.retry.backoff_seconds == 1.0
        assert policy.statement_timeout_ms == 30000

    def test_shipped_config_loads(self):
        policy = load_policy(PROJECT_ROOT / "config" / "import_policy.yml")
        assert isinstance(policy, ImportPolicy)
        assert policy.min_match_confidence == pytest.approx(0.5)
        assert policy.retry.max_attempts == 3

    def test_empty_file_gives_defaults(self, tmp_path: Path):
        p = tmp_path / "empty.yml"
        p.write_text("", encoding="utf-8")
        assert load_policy(p) is DEFAULT_POLICY

    def test_file_not_found_raises(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_policy(tmp_path / "does_not_exist.yml")

    def test_invalid_file_raises(self, tmp_path: Path):
        p = tmp_path / "bad.yml"
        p.write_text("chunk_size: 0\n", encoding="utf-8")
        with pytest.raises(PolicyValidationError):
            load_policy(p)


# ---------------------------------------------------------------------------
# validate_policy / policy_from_dict
# ---------------------------------------------------------------------------

class TestValidatePolicy:
    def test_empty_mapping_passes(self):
        validate_policy({})

    def test_full_mapping_passes(self):
        validate_policy({
            "chunk_size": 25,
            "chunk_pause_seconds": 0,
            "statement_timeout_ms": 0,
            "min_match_confidence": 1.0,
            "exclude_invalid_rows": True,
            "retry": {"max_attempts": 2, "backoff_seconds": 0.1},
        })

    def test_non_dict_root_raises(self):
        with pytest.raises(PolicyValidationError, match="mapping"):
            validate_policy(["chunk_size", 5])  # type: ignore[arg-type]

    def test_first_error_reported(self):
        with pytest.raises(PolicyValidationError) as exc_info:
            validate_policy({"chunk_size": 0, "chunk_pause_seconds": -1})
        assert str(exc_info.value) == "'chunk_size' must be >= 1."

    def test_unknown_key_raises(self):
        with pytest.raises(PolicyValidationError, match="chunksize"):
            validate_policy({"chunksize": 5})

    def test_unknown_retry_key_raises(self):
        with pytest.raises(PolicyValidationError, match="attempts"):
            validate_policy({"retry": {"attempts": 5}})

    @pytest.mark.parametrize("data", [
        {"chunk_size": 0},
        {"chunk_pause_seconds": -1},
        {"statement_timeout_ms": -5},
        {"min_match_confidence": 1.5},
        {"min_match_confidence": -0.1},
        {"retry": {"max_attempts": 0}},
        {"retry": {"backoff_seconds": -1}},
    ])
    def test_out_of_range_raises(self, data):
        with pytest.raises(PolicyValidationError):
            validate_policy(data)

    def test_non_numeric_raises(self):
        with pytest.raises(PolicyValidationError, match="not numeric"):
            validate_policy({"chunk_size": "lots"})

    def test_bool_is_not_a_number(self):
        with pytest.raises(PolicyValidationError, match="not numeric"):
            validate_policy({"chunk_size": True})

    def test_exclude_invalid_rows_must_be_bool(self):
        with pytest.raises(PolicyValidationError):
            validate_policy({"exclude_invalid_rows": "yes"})

    def test_retry_must_be_mapping(self):
        with pytest.raises(PolicyValidationError, match="'retry'"):
            validate_policy({"retry": 3})


class TestPolicyFromDict:
    def test_base_policy_respected(self):
        base = ImportPolicy(chunk_size=7)
        policy = policy_from_dict({"exclude_invalid_rows": True}, base=base)
        assert policy.chunk_size == 7
        assert policy.exclude_invalid_rows is True

    def test_partial_retry_override(self):
        policy = policy_from_dict({"retry": {"backoff_seconds": 2}})
        assert policy.retry == RetryPolicy(max_attempts=1, backoff_seconds=2.0)
