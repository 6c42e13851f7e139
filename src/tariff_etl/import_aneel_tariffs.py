"""tariff_etl.import_aneel_tariffs

CLI entrypoint for ANEEL tariff imports.

Modes (--mode):
  import           : load, validate, match and commit one ANEEL export (default)
  activate_version : make an import version the tenant's active tariff set
  list_versions    : print the tenant's import versions, newest first

Usage (import):
    python -m tariff_etl.import_aneel_tariffs \\
        --mode import \\
        --db-dsn "$DB_DSN" \\
        --tenant-id "$TENANT_ID" \\
        --file-path "rawEvidence/tarifas-homologadas-distribuidoras-energia-eletrica.csv" \\
        --rejects-path "artifacts/rejects/aneel_tariff_rejects.csv"

Usage (activate_version):
    python -m tariff_etl.import_aneel_tariffs \\
        --mode activate_version \\
        --db-dsn "$DB_DSN" \\
        --tenant-id "$TENANT_ID" \\
        --version-id "<uuid from list_versions>"
"""

from __future__ import annotations

import sys
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

import click
import psycopg

from tariff_etl.commit import CommitResult, activate_version, list_versions
from tariff_etl.entity_resolver import load_registry
from tariff_etl.pipeline import ImportSession
from tariff_etl.policy import DEFAULT_POLICY, ImportPolicy, PolicyValidationError, load_policy
from tariff_etl.shared import (
    InvalidTransitionError,
    RejectWriter,
    StructuralFileError,
    UnknownVersionError,
    write_run_report,
)
from tariff_etl.validation import INVALID, ValidationReport


@click.command()
@click.option(
    "--mode",
    default="import",
    type=click.Choice(["import", "activate_version", "list_versions"]),
    show_default=True,
    help="Run mode",
)
@click.option("--db-dsn", required=True, help="PostgreSQL DSN")
@click.option("--tenant-id", required=True, help="Tenant whose provider registry and tariffs are used")
@click.option("--file-path", default=None, type=click.Path(), help="[import] ANEEL .csv/.txt/.xlsx export")
@click.option("--policy-file", default=None, type=click.Path(), help="[import] YAML import policy override")
@click.option(
    "--confirm-invalid",
    is_flag=True,
    default=False,
    help="[import] Continue past validation even when some rows are invalid",
)
@click.option("--version-id", default=None, help="[activate_version] Import version to activate")
# shared flags
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/aneel_tariff_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
def main(
    mode: str,
    db_dsn: str,
    tenant_id: str,
    file_path: str | None,
    policy_file: str | None,
    confirm_invalid: bool,
    version_id: str | None,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
) -> None:
    """ANEEL tariff import CLI."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode == "activate_version":
        _validate_activate_flags(version_id, run_id)
        _run_activate_version(db_dsn, tenant_id, version_id, dry_run, run_id)  # type: ignore[arg-type]
        return
    if mode == "list_versions":
        _run_list_versions(db_dsn, tenant_id, run_id)
        return

    _validate_import_flags(file_path, run_id)
    policy = _load_policy_or_exit(policy_file, run_id)
    _run_import(
        db_dsn=db_dsn,
        tenant_id=tenant_id,
        file_path=Path(file_path),  # type: ignore[arg-type]
        policy=policy,
        confirm_invalid=confirm_invalid,
        dry_run=dry_run,
        rejects_path=Path(rejects_path),
        run_id=run_id,
        started_at=started_at,
    )


# ---------------------------------------------------------------------------
# Flag validation
# ---------------------------------------------------------------------------

def _validate_import_flags(file_path: str | None, run_id: str) -> None:
    if not file_path:
        click.echo(f"[{run_id}] FATAL: import mode requires: --file-path", err=True)
        sys.exit(1)
    if not Path(file_path).is_file():
        click.echo(f"[{run_id}] FATAL: file not found: {file_path}", err=True)
        sys.exit(1)


def _validate_activate_flags(version_id: str | None, run_id: str) -> None:
    if not version_id:
        click.echo(f"[{run_id}] FATAL: activate_version mode requires: --version-id", err=True)
        sys.exit(1)


def _load_policy_or_exit(policy_file: str | None, run_id: str) -> ImportPolicy:
    if not policy_file:
        return DEFAULT_POLICY
    try:
        policy = load_policy(Path(policy_file))
    except (PolicyValidationError, FileNotFoundError) as exc:
        click.echo(f"[{run_id}] FATAL: bad policy file {policy_file}: {exc}", err=True)
        sys.exit(1)
    click.echo(
        f"[{run_id}] Policy: chunk_size={policy.chunk_size} "
        f"retry.max_attempts={policy.retry.max_attempts} "
        f"min_match_confidence={policy.min_match_confidence}"
    )
    return policy


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------

def _make_notify(run_id: str):
    def notify(level: str, message: str) -> None:
        if level in ("error", "warning"):
            click.echo(f"[{run_id}] {level.upper()}: {message}", err=level == "error")
        else:
            click.echo(f"[{run_id}] {message}")
    return notify


def _write_rejects(report: ValidationReport, rejects_path: Path) -> int:
    rejects = RejectWriter(rejects_path)
    try:
        for rv in report.rows:
            if rv.status == INVALID:
                rejects.write({"row_index": str(rv.row_index), **rv.raw_fields}, "; ".join(rv.errors))
    finally:
        rejects.close()
    return rejects.count


def _validation_summary(report: ValidationReport) -> dict[str, Any]:
    return {
        "schema": report.schema.value,
        "total_rows": report.total_rows,
        "valid_rows": report.valid_rows,
        "invalid_rows": report.invalid_rows,
        "warning_rows": report.warning_rows,
        "discarded_footer_rows": len(report.discarded_footer_rows),
        "missing_required_columns": report.missing_required_columns,
        "detected_columns": report.detected_columns,
    }


# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------

def _run_import(
    *,
    db_dsn: str,
    tenant_id: str,
    file_path: Path,
    policy: ImportPolicy,
    confirm_invalid: bool,
    dry_run: bool,
    rejects_path: Path,
    run_id: str,
    started_at: str,
) -> None:
    session = ImportSession(tenant_id, policy=policy, notify=_make_notify(run_id))
    source_paths = {"file_path": str(file_path), "tenant_id": tenant_id}

    try:
        report = session.load(file_path.read_bytes(), file_path.name)
    except StructuralFileError as exc:
        click.echo(f"[{run_id}] FATAL: cannot read {file_path.name}: {exc}", err=True)
        sys.exit(1)

    click.echo(
        f"[{run_id}] {report.schema.label}: total={report.total_rows} "
        f"valid={report.valid_rows} invalid={report.invalid_rows} "
        f"warning={report.warning_rows} "
        f"discarded_footer={len(report.discarded_footer_rows)}"
    )

    if report.is_blocked:
        for msg in report.missing_required_columns:
            click.echo(f"[{run_id}] MISSING COLUMN: {msg}", err=True)
        report_path = write_run_report(
            run_id, started_at, "import", dry_run, source_paths,
            {"validation": _validation_summary(report)},
        )
        click.echo(f"[{run_id}] Run report: {report_path}")
        sys.exit(1)

    rejected = _write_rejects(report, rejects_path)
    if rejected:
        click.echo(f"[{run_id}] {rejected} invalid row(s) written to {rejects_path}")

    try:
        session.confirm_validation(confirm_invalid=confirm_invalid)
    except InvalidTransitionError as exc:
        click.echo(f"[{run_id}] FATAL: {exc} (use --confirm-invalid)", err=True)
        sys.exit(1)

    result: CommitResult | None = None
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        registry = load_registry(conn, tenant_id)
        aggregation = session.preview(registry)
        ctx = session.context
        click.echo(
            f"[{run_id}] Preview: records={len(ctx.records)} "  # type: ignore[union-attr]
            f"payloads={len(aggregation.payloads)} "
            f"grouped_records={aggregation.grouped_records} "
            f"skipped_records={aggregation.skipped_records} "
            f"resolver_lookups={ctx.resolver.lookups}"  # type: ignore[union-attr]
        )
        for agent in ctx.unmatched_agents:  # type: ignore[union-attr]
            click.echo(f"[{run_id}] UNMATCHED: {agent}")

        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] DRY RUN — nothing written.")
        else:
            result = session.commit(conn)
            click.echo(
                f"[{run_id}] Committed version {result.version_id}: "
                f"matched={result.matched} updated={result.updated} "
                f"skipped={result.skipped} errors={len(result.errors)} "
                f"A={result.family_tallies.get('A', 0)} B={result.family_tallies.get('B', 0)}"
            )
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    reports = session.reports()
    report_path = write_run_report(
        run_id, started_at, "import", dry_run, source_paths,
        {
            "validation": _validation_summary(report),
            "commit": result.to_dict() if result else None,
            "reports": reports.to_dict(),
        },
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if result is not None and (result.errors or result.aborted):
        click.echo(f"[{run_id}] {len(result.errors)} chunk error(s) during commit.", err=True)
        sys.exit(1)


def _run_activate_version(
    db_dsn: str,
    tenant_id: str,
    version_id: str,
    dry_run: bool,
    run_id: str,
) -> None:
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        try:
            version = activate_version(conn, tenant_id, version_id)
        except UnknownVersionError as exc:
            conn.rollback()
            click.echo(f"[{run_id}] FATAL: {exc}", err=True)
            sys.exit(1)
        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] DRY RUN — rolled back.")
        else:
            conn.commit()
            click.echo(
                f"[{run_id}] Activated version {version.id} "
                f"({version.source_file_name}, {version.total_records} records)."
            )
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _run_list_versions(db_dsn: str, tenant_id: str, run_id: str) -> None:
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        versions = list_versions(conn, tenant_id)
    finally:
        conn.close()
    if not versions:
        click.echo(f"[{run_id}] No import versions for tenant {tenant_id}.")
    for v in versions:
        click.echo(
            f"{v.id}  {v.status:<8}  {v.created_at}  records={v.total_records} "
            f"entities={v.total_entities}  {v.source_file_name}"
        )


if __name__ == "__main__":
    main()
