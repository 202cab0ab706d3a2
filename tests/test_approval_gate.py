"""Tests for human approval of wait_for_human steps."""

import asyncio

import pytest

from conftest import APPROVAL_CONFIG, PROMPT_CONFIG, connect, find_node, settle
from workflow_editor.models.core import (
    ApprovalAction,
    ApprovalResponse,
    NodeStatus,
    RunEventType,
    RunStatus,
    StepType,
)


def build_gated(editor, **config):
    """start -> wait_for_human(W) -> prompt(P) -> end"""
    start = find_node(editor, StepType.START)
    end = find_node(editor, StepType.END)
    gate = editor.add_node(StepType.WAIT_FOR_HUMAN, label="W", config={**APPROVAL_CONFIG, **config})
    prompt = editor.add_node(StepType.PROMPT, label="P", config=PROMPT_CONFIG)
    connect(editor, start, gate, target_port="data")
    connect(editor, gate, prompt, source_port="approved")
    connect(editor, prompt, end)
    assert editor.validate().is_valid
    return gate, prompt, end


@pytest.mark.asyncio
async def test_wait_for_human_blocks_with_pending_request(editor):
    gate, prompt, end = build_gated(editor, allowEdit=False, editableFields=["summary"])
    events = []
    editor.execution.subscribe(events.append)

    editor.start_run(run_input={"summary": "draft"})
    await settle()

    assert editor.status == RunStatus.WAITING_HUMAN
    assert editor.node_states[gate.id].status == NodeStatus.WAITING_HUMAN
    request = editor.pending_approval
    assert request.node_id == gate.id
    assert request.node_name == "W"
    assert request.prompt_message == "Looks good?"
    assert request.data_to_review == {"summary": "draft"}
    assert request.allow_edit is False
    assert request.editable_fields == ["summary"]
    assert request.timeout_at is None
    assert editor.pending_approvals == [request]
    requested = [e for e in events if e.type == RunEventType.APPROVAL_REQUESTED]
    assert requested[0].data["request"]["id"] == request.id
    editor.stop_run()


@pytest.mark.asyncio
async def test_approve_resumes_downstream(editor):
    gate, prompt, end = build_gated(editor)
    editor.start_run(run_input="draft")
    await settle()

    request = editor.pending_approval
    result = editor.respond_to_approval(ApprovalResponse(request_id=request.id, action=ApprovalAction.APPROVE))
    status = await editor.execution.wait_until_finished(timeout=1)

    assert result.ok
    assert status == RunStatus.COMPLETED
    states = editor.node_states
    assert states[gate.id].status == NodeStatus.SUCCESS
    assert states[gate.id].active_port == "approved"
    assert states[gate.id].output == "draft"
    assert states[prompt.id].output == "P:draft"
    assert editor.pending_approval is None


@pytest.mark.asyncio
async def test_approve_with_edits(editor):
    gate, prompt, end = build_gated(editor)
    editor.start_run(run_input="draft")
    await settle()

    request = editor.pending_approval
    assert request.allow_edit is True
    editor.respond_to_approval(ApprovalResponse(
        request_id=request.id, action=ApprovalAction.APPROVE, edited_data="final"
    ))
    await editor.execution.wait_until_finished(timeout=1)

    assert editor.node_states[gate.id].output == "final"
    assert editor.node_states[prompt.id].output == "P:final"


@pytest.mark.asyncio
async def test_edits_ignored_when_editing_not_allowed(editor):
    gate, prompt, end = build_gated(editor, allowEdit=False)
    editor.start_run(run_input="draft")
    await settle()

    editor.respond_to_approval(ApprovalResponse(
        request_id=editor.pending_approval.id, action=ApprovalAction.APPROVE, edited_data="sneaky"
    ))
    await editor.execution.wait_until_finished(timeout=1)

    assert editor.node_states[gate.id].output == "draft"


@pytest.mark.asyncio
async def test_reject_fails_node_and_skips_dependents(editor):
    gate, prompt, end = build_gated(editor)
    editor.start_run()
    await settle()

    request = editor.pending_approval
    editor.respond_to_approval(ApprovalResponse(
        request_id=request.id, action=ApprovalAction.REJECT, reason="Needs more detail"
    ))
    status = await editor.execution.wait_until_finished(timeout=1)

    states = editor.node_states
    assert status == RunStatus.FAILED
    assert states[gate.id].status == NodeStatus.FAILED
    assert states[gate.id].error == "Needs more detail"
    assert states[prompt.id].status == NodeStatus.SKIPPED
    assert states[end.id].status == NodeStatus.SKIPPED
    assert editor.error == "Run failed at W: Needs more detail"


@pytest.mark.asyncio
async def test_reject_without_reason(editor):
    gate, prompt, end = build_gated(editor)
    editor.start_run()
    await settle()

    editor.respond_to_approval(ApprovalResponse(
        request_id=editor.pending_approval.id, action=ApprovalAction.REJECT
    ))
    await editor.execution.wait_until_finished(timeout=1)

    assert editor.node_states[gate.id].error == "Rejected by reviewer"


@pytest.mark.asyncio
async def test_responding_twice_is_rejected(editor):
    gate, prompt, end = build_gated(editor)
    editor.start_run()
    await settle()

    request = editor.pending_approval
    approve = ApprovalResponse(request_id=request.id, action=ApprovalAction.APPROVE)
    assert editor.respond_to_approval(approve).ok
    await editor.execution.wait_until_finished(timeout=1)

    again = editor.respond_to_approval(approve)
    assert not again.ok
    assert again.error_code == "unknown_request"
    assert editor.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_unknown_request_is_rejected(editor):
    result = editor.respond_to_approval(ApprovalResponse(request_id="approval-nope", action=ApprovalAction.APPROVE))
    assert result.error_code == "unknown_request"


@pytest.mark.asyncio
async def test_independent_branch_keeps_running(editor):
    """start -> W -> end and start -> P -> end: P finishes while W waits."""
    start = find_node(editor, StepType.START)
    end = find_node(editor, StepType.END)
    gate = editor.add_node(StepType.WAIT_FOR_HUMAN, label="W", config=APPROVAL_CONFIG)
    prompt = editor.add_node(StepType.PROMPT, label="P", config=PROMPT_CONFIG)
    connect(editor, start, gate, target_port="data")
    connect(editor, gate, end, source_port="approved")
    connect(editor, start, prompt)
    connect(editor, prompt, end)
    assert editor.validate().is_valid

    run_statuses = []
    editor.execution.subscribe(
        lambda e: run_statuses.append(e.status) if e.type == RunEventType.RUN_STATUS else None
    )
    editor.start_run(run_input="x")
    await settle()

    states = editor.node_states
    assert states[prompt.id].status == NodeStatus.SUCCESS
    assert states[gate.id].status == NodeStatus.WAITING_HUMAN
    assert states[end.id].status == NodeStatus.IDLE
    assert editor.status == RunStatus.WAITING_HUMAN
    assert run_statuses == ["waiting_human"]

    editor.respond_to_approval(ApprovalResponse(
        request_id=editor.pending_approval.id, action=ApprovalAction.APPROVE
    ))
    status = await editor.execution.wait_until_finished(timeout=1)

    assert status == RunStatus.COMPLETED
    assert editor.node_states[end.id].output == {gate.id: "x", prompt.id: "P:x"}


@pytest.mark.asyncio
async def test_run_status_stays_running_while_a_branch_is_running(editor, executors):
    release = asyncio.Event()

    async def slow(context):
        await release.wait()
        return "done"

    executors.register(StepType.PROMPT, slow, replace=True)
    start = find_node(editor, StepType.START)
    end = find_node(editor, StepType.END)
    gate = editor.add_node(StepType.WAIT_FOR_HUMAN, label="W", config=APPROVAL_CONFIG)
    prompt = editor.add_node(StepType.PROMPT, label="P", config=PROMPT_CONFIG)
    connect(editor, start, gate, target_port="data")
    connect(editor, gate, end, source_port="approved")
    connect(editor, start, prompt)
    connect(editor, prompt, end)
    editor.validate()

    editor.start_run()
    await settle()
    assert editor.node_states[gate.id].status == NodeStatus.WAITING_HUMAN
    assert editor.status == RunStatus.RUNNING

    release.set()
    await settle()
    assert editor.status == RunStatus.WAITING_HUMAN
    editor.stop_run()


@pytest.mark.asyncio
async def test_two_gates_have_separate_requests(editor):
    start = find_node(editor, StepType.START)
    end = find_node(editor, StepType.END)
    first = editor.add_node(StepType.WAIT_FOR_HUMAN, label="W1", config=APPROVAL_CONFIG)
    second = editor.add_node(StepType.WAIT_FOR_HUMAN, label="W2", config=APPROVAL_CONFIG)
    for gate in (first, second):
        connect(editor, start, gate, target_port="data")
        connect(editor, gate, end, source_port="approved")
    editor.validate()

    editor.start_run()
    await settle()

    pending = editor.pending_approvals
    assert [r.node_id for r in pending] == [first.id, second.id]
    assert editor.pending_approval.node_id == first.id

    editor.respond_to_approval(ApprovalResponse(request_id=pending[0].id, action=ApprovalAction.APPROVE))
    await settle()
    assert editor.status == RunStatus.WAITING_HUMAN
    assert editor.pending_approval.node_id == second.id

    editor.respond_to_approval(ApprovalResponse(request_id=pending[1].id, action=ApprovalAction.APPROVE))
    assert await editor.execution.wait_until_finished(timeout=1) == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_timeout_applies_default_action(editor):
    gate, prompt, end = build_gated(editor, timeoutSeconds=0.05, defaultAction="approve")
    editor.start_run(run_input="draft")
    await settle()

    request = editor.pending_approval
    assert request.timeout_at is not None

    status = await editor.execution.wait_until_finished(timeout=2)
    assert status == RunStatus.COMPLETED
    assert editor.node_states[gate.id].output == "draft"


@pytest.mark.asyncio
async def test_timeout_rejects_by_default(editor):
    gate, prompt, end = build_gated(editor, timeoutSeconds=0.05)
    editor.start_run()

    status = await editor.execution.wait_until_finished(timeout=2)
    assert status == RunStatus.FAILED
    assert editor.node_states[gate.id].error == "Approval timed out"


@pytest.mark.asyncio
async def test_stop_discards_pending_requests(editor):
    gate, prompt, end = build_gated(editor, timeoutSeconds=0.05, defaultAction="approve")
    editor.start_run()
    await settle()
    request = editor.pending_approval

    editor.stop_run()
    await asyncio.sleep(0.1)

    assert editor.status == RunStatus.CANCELLED
    assert editor.pending_approvals == []
    assert editor.node_states[gate.id].status == NodeStatus.CANCELLED
    late = editor.respond_to_approval(ApprovalResponse(request_id=request.id, action=ApprovalAction.APPROVE))
    assert late.error_code == "unknown_request"


@pytest.mark.asyncio
async def test_approval_while_paused_waits_for_resume(editor):
    gate, prompt, end = build_gated(editor)
    editor.start_run(run_input="draft")
    await settle()

    editor.pause_run()
    editor.respond_to_approval(ApprovalResponse(
        request_id=editor.pending_approval.id, action=ApprovalAction.APPROVE
    ))
    await settle()

    assert editor.node_states[gate.id].status == NodeStatus.SUCCESS
    assert editor.node_states[prompt.id].status == NodeStatus.IDLE
    assert editor.status == RunStatus.PAUSED

    editor.resume_run()
    assert await editor.execution.wait_until_finished(timeout=1) == RunStatus.COMPLETED
