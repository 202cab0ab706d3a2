"""Tests for logging context propagation, formatting and the HTTP error mapping."""

import asyncio
import json
import logging

import pytest

from workflow_editor.core.exceptions import (
    ExecutionProtocolError,
    StorageError,
    UnknownStepTypeError,
    WorkflowEditorError,
)
from workflow_editor.core.logging import (
    EditorContextFilter,
    StructuredFormatter,
    clear_logging_context,
    get_logging_context,
    set_logging_context,
)
from workflow_editor.core.middleware import session_id_from_path, status_code_for_error


@pytest.fixture(autouse=True)
def empty_context():
    clear_logging_context()
    yield
    clear_logging_context()


def make_record(message="hello"):
    return logging.LogRecord("workflow_editor.test", logging.INFO, __file__, 1, message, None, None)


def test_context_is_merged_and_none_dropped():
    set_logging_context(run_id="r1")
    set_logging_context(node_id="n1", session_id=None)
    assert get_logging_context() == {"run_id": "r1", "node_id": "n1"}


def test_filter_renders_known_fields_in_order():
    set_logging_context(node_id="n1", run_id="r1", extra="x")
    record = make_record()

    assert EditorContextFilter().filter(record)
    assert record.context == " [run_id=r1 node_id=n1]"
    assert record.editor_context == {"node_id": "n1", "run_id": "r1", "extra": "x"}


def test_structured_formatter_includes_context():
    set_logging_context(run_id="r1")
    record = make_record("started")
    EditorContextFilter().filter(record)
    record.extra_fields = {"attempt": 2}

    entry = json.loads(StructuredFormatter().format(record))

    assert entry["message"] == "started"
    assert entry["run_id"] == "r1"
    assert entry["attempt"] == 2
    assert "exception" not in entry


@pytest.mark.asyncio
async def test_tasks_keep_their_own_context():
    async def log_as(node_id):
        set_logging_context(node_id=node_id)
        await asyncio.sleep(0)
        return get_logging_context()

    set_logging_context(run_id="r1")
    first, second = await asyncio.gather(log_as("a"), log_as("b"))

    assert first == {"run_id": "r1", "node_id": "a"}
    assert second == {"run_id": "r1", "node_id": "b"}
    assert get_logging_context() == {"run_id": "r1"}


@pytest.mark.parametrize("path,expected", [
    ("/api/v1/sessions/abc/nodes", "abc"),
    ("/api/v1/sessions/abc", "abc"),
    ("/api/v1/sessions", None),
    ("/api/v1/steps", None),
])
def test_session_id_from_path(path, expected):
    assert session_id_from_path(path) == expected


def test_status_codes():
    assert status_code_for_error(UnknownStepTypeError("teleport")) == 422
    assert status_code_for_error(ExecutionProtocolError("busy")) == 409
    assert status_code_for_error(StorageError("down")) == 503
    assert status_code_for_error(StorageError("corrupt", recoverable=False)) == 500
    assert status_code_for_error(WorkflowEditorError("unknown")) == 500


def test_error_context_drops_none():
    error = ExecutionProtocolError("busy", run_id=None, operation="start_run", details={"code": "run_active"})
    assert error.context == {"operation": "start_run"}
    assert error.to_dict()["category"] == "protocol"
    assert UnknownStepTypeError("teleport").context == {"step_type": "teleport"}
