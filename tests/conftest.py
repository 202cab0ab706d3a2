"""Pytest configuration and fixtures."""

import asyncio

import pytest

from workflow_editor.config import get_testing_config
from workflow_editor.core.editor import WorkflowEditor
from workflow_editor.core.executor_registry import ExecutorRegistry, StepResult
from workflow_editor.models.core import StepType
from workflow_editor.storage.database import create_database_engine, create_tables, get_session_factory
from workflow_editor.storage.document_repository import DocumentRepository

PROMPT_CONFIG = {"model": "gpt-4o-mini", "userPromptTemplate": "Summarize {{input}}"}
APPROVAL_CONFIG = {"promptMessage": "Looks good?"}


async def settle(rounds: int = 50):
    """Let the event loop run queued callbacks and executor tasks."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def echo_prompt(context):
    return f"{context.node.label}:{context.input}"


@pytest.fixture
def executors():
    registry = ExecutorRegistry()
    registry.register(StepType.PROMPT, echo_prompt, "Echoes its input")
    registry.register(StepType.BRANCH, lambda context: StepResult(output=context.input, active_port="true"))
    return registry


@pytest.fixture
def editor(executors):
    """Editor with a fresh start -> end workflow (not connected)."""
    editor = WorkflowEditor(executors=executors)
    editor.new_workflow()
    return editor


def find_node(editor, step_type):
    return next(n for n in editor.nodes if n.step_type == step_type)


def connect(editor, source, target, source_port="output", target_port="input"):
    result = editor.connect(source.id, source_port, target.id, target_port)
    assert result.ok, result.reason
    return result.value


@pytest.fixture
def linear_editor(editor):
    """start -> prompt(A) -> end, validated."""
    start = find_node(editor, StepType.START)
    end = find_node(editor, StepType.END)
    prompt = editor.add_node(StepType.PROMPT, (300, 200), label="A", config=PROMPT_CONFIG)
    connect(editor, start, prompt)
    connect(editor, prompt, end)
    assert editor.validate().is_valid
    return editor


@pytest.fixture
def testing_config():
    return get_testing_config()


@pytest.fixture
def repository():
    """Document repository over an in-memory SQLite database."""
    engine = create_database_engine("sqlite:///:memory:")
    create_tables(engine)
    yield DocumentRepository(get_session_factory(engine))
    engine.dispose()
