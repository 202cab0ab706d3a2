"""Tests for document persistence and storage retries."""

import pytest
from sqlalchemy.exc import OperationalError

from conftest import find_node
from workflow_editor.core.editor import WorkflowEditor
from workflow_editor.core.error_recovery import RetryConfig, is_transient, with_retry
from workflow_editor.core.exceptions import StorageError
from workflow_editor.models.core import StepType, WorkflowDocument


def test_save_assigns_id_and_loads_back(repository, linear_editor):
    linear_editor.set_workflow_meta("Summaries", "Summarize documents")
    saved = repository.save(linear_editor.export_document())

    assert saved.id
    assert saved.version == 1
    assert saved.metadata.created_at is not None

    loaded = repository.load(saved.id)
    assert loaded.name == "Summaries"
    assert loaded.description == "Summarize documents"
    assert loaded.nodes == linear_editor.nodes
    assert loaded.edges == linear_editor.edges


def test_save_existing_bumps_version(repository, linear_editor):
    saved = repository.save(linear_editor.export_document())
    linear_editor.mark_saved(saved)
    linear_editor.add_node(StepType.LOG)

    resaved = repository.save(linear_editor.export_document())

    assert resaved.id == saved.id
    assert resaved.version == 2
    assert len(resaved.nodes) == 4


def test_load_missing_returns_none(repository):
    assert repository.load("missing") is None


def test_list_recent_and_delete(repository):
    first = repository.save(WorkflowDocument(name="Beta"))
    second = repository.save(WorkflowDocument(name="Alpha"))

    assert [s.name for s in repository.list_documents()] == ["Alpha", "Beta"]
    summaries = repository.recent(limit=1)
    assert len(summaries) == 1
    assert summaries[0].id == second.id
    assert summaries[0].node_count == 0

    assert repository.delete(first.id)
    assert not repository.delete(first.id)
    assert [s.id for s in repository.list_documents()] == [second.id]


def test_loaded_document_restores_editor(repository, linear_editor):
    saved = repository.save(linear_editor.export_document())
    editor = WorkflowEditor()

    editor.load_document(repository.load(saved.id))

    assert find_node(editor, StepType.PROMPT).label == "A"
    assert editor.workflow_id == saved.id


class TestRetry:
    def test_retries_operational_errors(self):
        calls = []

        @with_retry(RetryConfig(max_attempts=3, base_delay=0, jitter=False))
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise OperationalError("SELECT 1", {}, Exception("database is locked"))
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 3

    def test_non_recoverable_errors_are_not_retried(self):
        calls = []

        @with_retry(RetryConfig(max_attempts=3, base_delay=0))
        def broken():
            calls.append(1)
            raise StorageError("corrupt row", recoverable=False)

        with pytest.raises(StorageError):
            broken()
        assert len(calls) == 1

    def test_gives_up_after_max_attempts(self):
        calls = []

        @with_retry(RetryConfig(max_attempts=2, base_delay=0))
        def down():
            calls.append(1)
            raise StorageError("unavailable")

        with pytest.raises(StorageError):
            down()
        assert len(calls) == 2

    def test_delay_is_capped(self):
        config = RetryConfig(base_delay=1, max_delay=3, jitter=False)
        assert config.get_delay(1) == 1
        assert config.get_delay(2) == 2
        assert config.get_delay(5) == 3

    def test_transient_classification(self):
        locked = OperationalError("SELECT 1", {}, Exception("database is locked"))
        assert is_transient(locked)
        assert is_transient(StorageError("unavailable"))
        assert not is_transient(StorageError("corrupt row", recoverable=False))
        assert not is_transient(ValueError("bad input"))
