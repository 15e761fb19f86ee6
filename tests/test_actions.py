"""Tests for the action catalogue and dispatch table."""

from __future__ import annotations

import dataclasses

import pytest

from courier.actions import (
    ACTIONS,
    DEFAULT_PROCESSING_MS,
    build_action_table,
    parse_action,
    resolve_action,
)
from courier.models import TaskAction, TaskResult


class TestActionTable:
    def test_covers_every_action(self) -> None:
        assert set(ACTIONS) == set(TaskAction)

    @pytest.mark.parametrize(
        ("action", "ms"),
        [
            (TaskAction.SEND_EMAIL, 2000),
            (TaskAction.PROCESS_IMAGE, 3000),
            (TaskAction.GENERATE_REPORT, 4000),
            (TaskAction.BACKUP_DATA, 2500),
        ],
    )
    def test_latencies(self, action: TaskAction, ms: int) -> None:
        assert ACTIONS[action].processing_ms == ms

    def test_is_read_only(self) -> None:
        with pytest.raises(TypeError):
            ACTIONS[TaskAction.SEND_EMAIL] = ACTIONS[TaskAction.BACKUP_DATA]  # type: ignore[index]

    def test_rejects_missing_action(self) -> None:
        specs = tuple(s for a, s in ACTIONS.items() if a != TaskAction.BACKUP_DATA)
        with pytest.raises(ValueError, match="backup_data"):
            build_action_table(specs)

    def test_rejects_duplicate_action(self) -> None:
        specs = (*ACTIONS.values(), ACTIONS[TaskAction.SEND_EMAIL])
        with pytest.raises(ValueError, match="Duplicate"):
            build_action_table(specs)

    def test_to_dict(self) -> None:
        info = ACTIONS[TaskAction.SEND_EMAIL].to_dict()
        assert info["action"] == "send_email"
        assert info["label"] == "Send Email"
        assert info["processingDuration"] == 2000
        assert info["dataFields"] == [
            {"name": "recipient", "label": "Recipient Email", "placeholder": "user@example.com"}
        ]


class TestResultTemplates:
    @pytest.mark.parametrize(
        ("action", "data", "message"),
        [
            (TaskAction.SEND_EMAIL, {"recipient": "a@b.com"}, "Email sent to a@b.com"),
            (TaskAction.PROCESS_IMAGE, {"filename": "cat.png"}, "Image processed: cat.png"),
            (TaskAction.GENERATE_REPORT, {"reportType": "Q3"}, "Report generated for Q3"),
            (TaskAction.BACKUP_DATA, {"dataType": "users"}, "Backup completed for users"),
        ],
    )
    def test_templates(self, action: TaskAction, data: dict[str, str], message: str) -> None:
        _ms, handler = resolve_action(action)
        assert handler(data) == TaskResult(success=True, message=message)

    @pytest.mark.parametrize("data", [{}, {"recipient": ""}])
    def test_missing_field_renders_unknown(self, data: dict[str, str]) -> None:
        _ms, handler = resolve_action("send_email")
        assert handler(data).message == "Email sent to unknown"


class TestResolveAction:
    def test_unknown_action_fallback(self) -> None:
        ms, handler = resolve_action("launch_rocket")
        assert ms == DEFAULT_PROCESSING_MS == 1000
        assert handler({}).message == "Processed action: launch_rocket"

    def test_custom_table(self) -> None:
        spec = dataclasses.replace(ACTIONS[TaskAction.SEND_EMAIL], processing_ms=5)
        table = {**ACTIONS, TaskAction.SEND_EMAIL: spec}
        ms, _handler = resolve_action(TaskAction.SEND_EMAIL, table)
        assert ms == 5


class TestParseAction:
    def test_known(self) -> None:
        assert parse_action("process_image") is TaskAction.PROCESS_IMAGE
        assert parse_action(TaskAction.BACKUP_DATA) is TaskAction.BACKUP_DATA

    @pytest.mark.parametrize("raw", [None, "", "SEND_EMAIL", "nope"])
    def test_unknown(self, raw: str | None) -> None:
        assert parse_action(raw) is None
