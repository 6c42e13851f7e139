"""tariff_etl.workflow

Import workflow as a pure finite-state machine.

  upload      file_selected      -> processing
  processing  file_loaded        -> validate     load_failed -> upload
  validate    confirm_validation -> preview      back        -> upload
  preview     start_import       -> importing    back        -> validate
  importing   import_finished    -> done

confirm_validation is refused while required columns are missing, and needs
confirm_invalid=True when the file has invalid rows.  reset returns to UPLOAD
from any step except IMPORTING.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable

from tariff_etl.shared import InvalidTransitionError


class ImportStep(str, Enum):
    UPLOAD = "upload"
    PROCESSING = "processing"
    VALIDATE = "validate"
    PREVIEW = "preview"
    IMPORTING = "importing"
    DONE = "done"


@dataclass(frozen=True)
class WorkflowState:
    step: ImportStep = ImportStep.UPLOAD
    file_name: str | None = None
    invalid_rows: int = 0
    blocked: bool = False
    error: str | None = None


INITIAL_STATE = WorkflowState()


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

def _file_selected(state: WorkflowState, facts: dict[str, Any]) -> WorkflowState:
    return WorkflowState(step=ImportStep.PROCESSING, file_name=facts.get("file_name"))


def _file_loaded(state: WorkflowState, facts: dict[str, Any]) -> WorkflowState:
    return replace(
        state,
        step=ImportStep.VALIDATE,
        invalid_rows=int(facts.get("invalid_rows", 0)),
        blocked=bool(facts.get("blocked", False)),
        error=None,
    )


def _load_failed(state: WorkflowState, facts: dict[str, Any]) -> WorkflowState:
    return WorkflowState(step=ImportStep.UPLOAD, error=str(facts.get("error") or "load failed"))


def _confirm_validation(state: WorkflowState, facts: dict[str, Any]) -> WorkflowState:
    if state.blocked:
        raise InvalidTransitionError(
            "cannot continue: required columns are missing; fix the file and upload again"
        )
    if state.invalid_rows and not facts.get("confirm_invalid"):
        raise InvalidTransitionError(
            f"{state.invalid_rows} invalid row(s): pass confirm_invalid=True to continue"
        )
    return replace(state, step=ImportStep.PREVIEW)


def _back(state: WorkflowState, facts: dict[str, Any]) -> WorkflowState:
    if state.step is ImportStep.PREVIEW:
        return replace(state, step=ImportStep.VALIDATE)
    return INITIAL_STATE


def _start_import(state: WorkflowState, facts: dict[str, Any]) -> WorkflowState:
    return replace(state, step=ImportStep.IMPORTING)


def _import_finished(state: WorkflowState, facts: dict[str, Any]) -> WorkflowState:
    return replace(state, step=ImportStep.DONE, error=facts.get("error"))


def _reset(state: WorkflowState, facts: dict[str, Any]) -> WorkflowState:
    return INITIAL_STATE


Handler = Callable[[WorkflowState, dict], WorkflowState]

_TRANSITIONS: dict[tuple[ImportStep, str], Handler] = {
    (ImportStep.UPLOAD, "file_selected"): _file_selected,
    (ImportStep.PROCESSING, "file_loaded"): _file_loaded,
    (ImportStep.PROCESSING, "load_failed"): _load_failed,
    (ImportStep.VALIDATE, "confirm_validation"): _confirm_validation,
    (ImportStep.VALIDATE, "back"): _back,
    (ImportStep.PREVIEW, "back"): _back,
    (ImportStep.PREVIEW, "start_import"): _start_import,
    (ImportStep.IMPORTING, "import_finished"): _import_finished,
}

_RESETTABLE = frozenset(step for step in ImportStep if step is not ImportStep.IMPORTING)


def allowed_events(state: WorkflowState) -> list[str]:
    events = [event for (step, event) in _TRANSITIONS if step is state.step]
    if state.step in _RESETTABLE:
        events.append("reset")
    return events


def transition(state: WorkflowState, event: str, **facts: Any) -> WorkflowState:
    """Return the state after event; raise InvalidTransitionError if illegal."""
    if event == "reset" and state.step in _RESETTABLE:
        return _reset(state, facts)
    handler = _TRANSITIONS.get((state.step, event))
    if handler is None:
        raise InvalidTransitionError(f"event '{event}' is not allowed in step '{state.step.value}'")
    return handler(state, facts)
