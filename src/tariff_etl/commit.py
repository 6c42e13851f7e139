"""tariff_etl.commit

Commit Engine: persists aggregated payloads as one versioned import.

  1. create_import_version   one 'draft' tariff_import_version row, committed
                             at once so provenance survives later failures
  2. batch upserts           payloads in chunks of policy.chunk_size; each
                             chunk runs in a SAVEPOINT and is committed on
                             success.  A failed chunk is rolled back to its
                             savepoint, retried per policy.retry, then recorded
                             in CommitResult.errors; later chunks still run.
  3. write_audit_log         one aggregate audit_log row, best-effort

Upserts are keyed on (tenant_id, provider_id, subgroup, tariff_mode) and only
touch the rate columns the payload carries, so re-importing the same file is
idempotent.

Version management: activate_version archives the tenant's current active
version and switches is_active on the tariff rows of both versions.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping

import psycopg

from tariff_etl.aggregate import (
    FAMILY_HIGH_VOLTAGE,
    FAMILY_LOW_VOLTAGE,
    SubgroupTariffPayload,
)
from tariff_etl.policy import DEFAULT_POLICY, ImportPolicy
from tariff_etl.shared import BatchUpsertError, UnknownVersionError

log = logging.getLogger(__name__)

Notify = Callable[[str, str], None]

STATUS_DRAFT = "draft"
STATUS_ACTIVE = "active"
STATUS_ARCHIVED = "archived"

# Whitelist of payload value names; also the provider_subgroup_tariff columns.
RATE_COLUMNS: tuple[str, ...] = (
    "energy_rate",
    "tusd_rate",
    "te_peak",
    "te_off_peak",
    "tusd_peak",
    "tusd_off_peak",
    "demand_consumption_rate",
    "demand_generation_rate",
    "wire_b_rate",
    "wire_b_peak",
    "wire_b_off_peak",
)


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass
class ImportVersion:
    id: str
    tenant_id: str
    origin: str
    status: str
    total_records: int
    total_entities: int
    source_file_name: str
    created_at: datetime | None = None
    activated_at: datetime | None = None
    notes: str | None = None


@dataclass
class CommitResult:
    matched: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    family_tallies: dict[str, int] = field(
        default_factory=lambda: {FAMILY_HIGH_VOLTAGE: 0, FAMILY_LOW_VOLTAGE: 0}
    )
    version_id: str | None = None
    aborted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "matched": self.matched,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors[:50],
            "family_tallies": dict(self.family_tallies),
            "version_id": self.version_id,
            "aborted": self.aborted,
        }


def _noop_notify(level: str, message: str) -> None:
    pass


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------

_VERSION_COLUMNS = (
    "id::text, tenant_id, origin, status, total_records, total_entities, "
    "source_file_name, created_at, activated_at, notes"
)


def _version_from_row(row: tuple) -> ImportVersion:
    return ImportVersion(
        id=row[0],
        tenant_id=row[1],
        origin=row[2],
        status=row[3],
        total_records=row[4],
        total_entities=row[5],
        source_file_name=row[6],
        created_at=row[7],
        activated_at=row[8],
        notes=row[9],
    )


def create_import_version(
    conn: psycopg.Connection,
    *,
    tenant_id: str,
    origin: str,
    total_records: int,
    total_entities: int,
    source_file_name: str,
    notes: str | None = None,
) -> ImportVersion:
    """Insert one draft version row and commit it immediately."""
    row = conn.execute(
        f"""
        INSERT INTO tariff_import_version
            (tenant_id, origin, status, total_records, total_entities,
             source_file_name, notes)
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        RETURNING {_VERSION_COLUMNS}
        """,
        (tenant_id, origin, STATUS_DRAFT, total_records, total_entities,
         source_file_name, notes),
    ).fetchone()
    conn.commit()
    return _version_from_row(row)


def get_version(conn: psycopg.Connection, tenant_id: str, version_id: str) -> ImportVersion:
    row = conn.execute(
        f"SELECT {_VERSION_COLUMNS} FROM tariff_import_version "
        "WHERE tenant_id = %s AND id::text = %s",
        (tenant_id, version_id),
    ).fetchone()
    if row is None:
        raise UnknownVersionError(f"import version {version_id} not found for tenant {tenant_id}")
    return _version_from_row(row)


def list_versions(conn: psycopg.Connection, tenant_id: str) -> list[ImportVersion]:
    """All import versions of the tenant, newest first."""
    rows = conn.execute(
        f"SELECT {_VERSION_COLUMNS} FROM tariff_import_version "
        "WHERE tenant_id = %s ORDER BY created_at DESC, id",
        (tenant_id,),
    ).fetchall()
    return [_version_from_row(r) for r in rows]


def activate_version(conn: psycopg.Connection, tenant_id: str, version_id: str) -> ImportVersion:
    """Make version_id the tenant's active version.

    Archives the currently active version and deactivates its tariff rows,
    then activates the target and its rows.  Caller manages the transaction.
    """
    target = get_version(conn, tenant_id, version_id)
    if target.status == STATUS_ACTIVE:
        log.info("Version %s is already active.", version_id)
        return target

    current = conn.execute(
        "SELECT id::text FROM tariff_import_version "
        "WHERE tenant_id = %s AND status = %s AND id::text <> %s",
        (tenant_id, STATUS_ACTIVE, version_id),
    ).fetchall()
    for (current_id,) in current:
        conn.execute(
            "UPDATE tariff_import_version SET status = %s WHERE id::text = %s",
            (STATUS_ARCHIVED, current_id),
        )
        conn.execute(
            "UPDATE provider_subgroup_tariff SET is_active = false, updated_at = now() "
            "WHERE tenant_id = %s AND version_id::text = %s",
            (tenant_id, current_id),
        )
        log.info("Archived import version %s.", current_id)

    row = conn.execute(
        f"""
        UPDATE tariff_import_version
        SET status = %s, activated_at = now()
        WHERE id::text = %s
        RETURNING {_VERSION_COLUMNS}
        """,
        (STATUS_ACTIVE, version_id),
    ).fetchone()
    conn.execute(
        "UPDATE provider_subgroup_tariff SET is_active = true, updated_at = now() "
        "WHERE tenant_id = %s AND version_id::text = %s",
        (tenant_id, version_id),
    )
    log.info("Activated import version %s for tenant %s.", version_id, tenant_id)
    return _version_from_row(row)


# ---------------------------------------------------------------------------
# Upserts
# ---------------------------------------------------------------------------

def _upsert_payload(
    conn: psycopg.Connection,
    tenant_id: str,
    payload: SubgroupTariffPayload,
    version_id: str,
) -> None:
    rate_cols = [c for c in RATE_COLUMNS if c in payload.values]
    cols = ["tenant_id", "provider_id", "subgroup", "tariff_mode", *rate_cols,
            "origin", "version_id", "is_active", "updated_at"]
    placeholders = ", ".join(["%s"] * (len(cols) - 1) + ["now()"])
    updates = ", ".join(
        f"{c} = EXCLUDED.{c}"
        for c in [*rate_cols, "origin", "version_id", "is_active", "updated_at"]
    )
    params = [
        tenant_id, payload.entity_id, payload.subgroup, payload.tariff_mode,
        *(payload.values[c] for c in rate_cols),
        payload.origin, version_id, True,
    ]
    conn.execute(
        f"""
        INSERT INTO provider_subgroup_tariff ({", ".join(cols)})
        VALUES ({placeholders})
        ON CONFLICT (tenant_id, provider_id, subgroup, tariff_mode) DO UPDATE SET
            {updates}
        """,
        params,
    )


def _upsert_chunk(
    conn: psycopg.Connection,
    chunk_index: int,
    chunk: list[SubgroupTariffPayload],
    tenant_id: str,
    version_id: str,
) -> None:
    sp = f"tariff_chunk_{chunk_index}"
    conn.execute(f"SAVEPOINT {sp}")
    try:
        for payload in chunk:
            _upsert_payload(conn, tenant_id, payload, version_id)
        conn.execute(f"RELEASE SAVEPOINT {sp}")
    except Exception as exc:
        conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
        raise BatchUpsertError(chunk_index, exc) from exc


def apply_statement_timeout(conn: psycopg.Connection, timeout_ms: int) -> None:
    conn.execute("SELECT set_config('statement_timeout', %s, false)", (str(int(timeout_ms)),))


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

def write_audit_log(
    conn: psycopg.Connection,
    *,
    tenant_id: str,
    action: str,
    table_name: str,
    details: dict[str, Any],
) -> bool:
    """Insert one audit_log row.  Failures are logged and never raised."""
    try:
        conn.execute("SAVEPOINT audit_log")
        try:
            conn.execute(
                """
                INSERT INTO audit_log (tenant_id, action, table_name, details)
                VALUES (%s, %s, %s, %s::jsonb)
                """,
                (tenant_id, action, table_name, json.dumps(details, default=str)),
            )
        except Exception:
            conn.execute("ROLLBACK TO SAVEPOINT audit_log")
            raise
        conn.execute("RELEASE SAVEPOINT audit_log")
        conn.commit()
        return True
    except Exception as exc:
        log.warning("Audit log write failed (%s); import result unaffected.", exc)
        return False


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _chunks(items: list[SubgroupTariffPayload], size: int) -> list[list[SubgroupTariffPayload]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def commit_payloads(
    conn: psycopg.Connection,
    payloads: Mapping[Any, SubgroupTariffPayload] | Iterable[SubgroupTariffPayload],
    *,
    tenant_id: str,
    source_file_name: str,
    skipped: int = 0,
    policy: ImportPolicy = DEFAULT_POLICY,
    notify: Notify | None = None,
    should_abort: Callable[[], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> CommitResult:
    """Persist payloads as a new draft import version.

    Args:
        conn: Open psycopg connection (autocommit off).  Committed after the
            version row, after each successful chunk, and after the audit row.
        payloads: Aggregated payloads, one per upsert key.
        skipped: Parsed records whose agent never matched an entity.
        notify: Optional notify(level, message) sink for progress strings.
        should_abort: Checked before each chunk; True stops the batch phase.
        sleep: Injected for the inter-chunk pause and retry backoff.

    Returns:
        CommitResult with per-family tallies and the new version id.
    """
    notify = notify or _noop_notify
    items = list(payloads.values()) if isinstance(payloads, Mapping) else list(payloads)
    result = CommitResult(matched=len(items), skipped=skipped)

    origin = items[0].origin if items else "aneel_consolidated"
    version = create_import_version(
        conn,
        tenant_id=tenant_id,
        origin=origin,
        total_records=sum(p.record_count for p in items),
        total_entities=len({p.entity_id for p in items}),
        source_file_name=source_file_name,
    )
    result.version_id = version.id
    notify("info", f"Import version {version.id} created ({len(items)} payloads).")

    apply_statement_timeout(conn, policy.statement_timeout_ms)

    chunks = _chunks(items, policy.chunk_size)
    for idx, chunk in enumerate(chunks):
        if should_abort is not None and should_abort():
            result.aborted = True
            log.warning("Import aborted before chunk %d/%d.", idx + 1, len(chunks))
            notify("warning", f"Import aborted after {result.updated} payloads.")
            break

        attempt = 1
        while True:
            try:
                _upsert_chunk(conn, idx, chunk, tenant_id, version.id)
                conn.commit()
            except BatchUpsertError as exc:
                if policy.retry.should_retry(attempt):
                    delay = policy.retry.delay(attempt)
                    log.warning(
                        "Chunk %d/%d failed (attempt %d/%d): %s; retrying in %.1fs",
                        idx + 1, len(chunks), attempt, policy.retry.max_attempts,
                        exc.cause, delay,
                    )
                    sleep(delay)
                    attempt += 1
                    continue
                log.error("Chunk %d/%d failed: %s", idx + 1, len(chunks), exc.cause)
                result.errors.append(str(exc))
                notify("error", str(exc))
            else:
                result.updated += len(chunk)
                for payload in chunk:
                    payload.version_id = version.id
                    result.family_tallies[payload.family] = (
                        result.family_tallies.get(payload.family, 0) + 1
                    )
            break

        notify("progress", f"chunk {idx + 1}/{len(chunks)}: {result.updated}/{len(items)} payloads")
        if idx < len(chunks) - 1 and policy.chunk_pause_seconds > 0:
            sleep(policy.chunk_pause_seconds)

    write_audit_log(
        conn,
        tenant_id=tenant_id,
        action="tariff_import",
        table_name="provider_subgroup_tariff",
        details={
            "version_id": version.id,
            "source_file_name": source_file_name,
            "origin": origin,
            **result.to_dict(),
        },
    )
    return result
