"""Task action catalogue and dispatch table.

Each :class:`TaskAction` maps to an :class:`ActionSpec` carrying its
simulated processing latency, the handler that renders its result, and
the display metadata served by ``GET /task-types``.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from courier.models import TaskAction, TaskResult

DEFAULT_PROCESSING_MS = 1000
DEFAULT_TASK_LIMIT = 20

ActionHandler = Callable[[Mapping[str, str]], TaskResult]


@dataclass(frozen=True, slots=True)
class DataField:
    name: str
    label: str
    placeholder: str


@dataclass(frozen=True, slots=True)
class ActionSpec:
    """Latency, handler and display metadata for one action."""

    action: TaskAction
    label: str
    description: str
    processing_ms: int
    handler: ActionHandler
    data_fields: tuple[DataField, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, object]:
        return {
            "action": self.action.value,
            "label": self.label,
            "description": self.description,
            "processingDuration": self.processing_ms,
            "dataFields": [
                {"name": f.name, "label": f.label, "placeholder": f.placeholder}
                for f in self.data_fields
            ],
        }


def _field(data: Mapping[str, str], name: str) -> str:
    return data.get(name) or "unknown"


def _send_email(data: Mapping[str, str]) -> TaskResult:
    return TaskResult(message=f"Email sent to {_field(data, 'recipient')}")


def _process_image(data: Mapping[str, str]) -> TaskResult:
    return TaskResult(message=f"Image processed: {_field(data, 'filename')}")


def _generate_report(data: Mapping[str, str]) -> TaskResult:
    return TaskResult(message=f"Report generated for {_field(data, 'reportType')}")


def _backup_data(data: Mapping[str, str]) -> TaskResult:
    return TaskResult(message=f"Backup completed for {_field(data, 'dataType')}")


_SPECS: tuple[ActionSpec, ...] = (
    ActionSpec(
        action=TaskAction.SEND_EMAIL,
        label="Send Email",
        description="Simulate sending an email (2s delay)",
        processing_ms=2000,
        handler=_send_email,
        data_fields=(DataField("recipient", "Recipient Email", "user@example.com"),),
    ),
    ActionSpec(
        action=TaskAction.PROCESS_IMAGE,
        label="Process Image",
        description="Simulate image processing (3s delay)",
        processing_ms=3000,
        handler=_process_image,
        data_fields=(DataField("filename", "Filename", "photo.jpg"),),
    ),
    ActionSpec(
        action=TaskAction.GENERATE_REPORT,
        label="Generate Report",
        description="Simulate report generation (4s delay)",
        processing_ms=4000,
        handler=_generate_report,
        data_fields=(DataField("reportType", "Report Type", "Monthly Sales"),),
    ),
    ActionSpec(
        action=TaskAction.BACKUP_DATA,
        label="Backup Data",
        description="Simulate data backup (2.5s delay)",
        processing_ms=2500,
        handler=_backup_data,
        data_fields=(DataField("dataType", "Data Type", "User Database"),),
    ),
)


def build_action_table(specs: tuple[ActionSpec, ...]) -> Mapping[TaskAction, ActionSpec]:
    """Index *specs* by action, requiring exactly one spec per :class:`TaskAction`.

    Raises:
        ValueError: If an action is missing or declared twice.
    """
    table: dict[TaskAction, ActionSpec] = {}
    for spec in specs:
        if spec.action in table:
            raise ValueError(f"Duplicate action spec: {spec.action.value}")
        table[spec.action] = spec
    missing = set(TaskAction) - set(table)
    if missing:
        names = ", ".join(sorted(a.value for a in missing))
        raise ValueError(f"No action spec for: {names}")
    return MappingProxyType(table)


ACTIONS: Mapping[TaskAction, ActionSpec] = build_action_table(_SPECS)


def parse_action(raw: str | TaskAction | None) -> TaskAction | None:
    """Return the :class:`TaskAction` named by *raw*, or ``None`` if unknown."""
    if isinstance(raw, TaskAction):
        return raw
    if not raw:
        return None
    try:
        return TaskAction(raw)
    except ValueError:
        return None


def resolve_action(
    raw: str | TaskAction,
    table: Mapping[TaskAction, ActionSpec] = ACTIONS,
) -> tuple[int, ActionHandler]:
    """Return ``(processing_ms, handler)`` for *raw*.

    Unknown actions get :data:`DEFAULT_PROCESSING_MS` and a generic
    ``"Processed action: ..."`` result.
    """
    action = parse_action(raw)
    spec = table.get(action) if action is not None else None
    if spec is not None:
        return spec.processing_ms, spec.handler

    label = raw.value if isinstance(raw, TaskAction) else raw

    def _fallback(_data: Mapping[str, str]) -> TaskResult:
        return TaskResult(message=f"Processed action: {label}")

    return DEFAULT_PROCESSING_MS, _fallback
