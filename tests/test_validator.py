"""Tests for workflow validation."""

from workflow_editor.core.validator import Validator, find_reachable, validate_workflow
from workflow_editor.models.core import StepType, ValidationSeverity, WorkflowEdge, WorkflowNode

PROMPT_CONFIG = {"model": "gpt-4o-mini", "userPromptTemplate": "{{input}}"}


def node(node_id, step_type, **config):
    return WorkflowNode(id=node_id, step_type=step_type, label=node_id.upper(), config=config)


def edge(edge_id, source, target, source_port="output", target_port="input"):
    return WorkflowEdge(id=edge_id, source=source, source_port=source_port, target=target, target_port=target_port)


def issue_ids(report):
    return [issue.id for issue in report.issues]


def linear_graph():
    nodes = [node("s", StepType.START), node("a", StepType.PROMPT, **PROMPT_CONFIG), node("e", StepType.END)]
    edges = [edge("e1", "s", "a"), edge("e2", "a", "e")]
    return nodes, edges


def test_valid_linear_graph():
    report = Validator().validate(*linear_graph())
    assert report.is_valid
    assert report.issues == []


def test_missing_start_is_an_error():
    report = validate_workflow([node("e", StepType.END)], [])
    assert not report.is_valid
    assert "no-start" in issue_ids(report)
    assert report.errors[0].message == "Workflow must have a Start node (no entry point)"


def test_multiple_starts_is_an_error():
    nodes = [node("s1", StepType.START), node("s2", StepType.START), node("e", StepType.END)]
    edges = [edge("e1", "s1", "e"), edge("e2", "s2", "e")]
    report = Validator().validate(nodes, edges)
    assert "multiple-start" in issue_ids(report)
    assert not report.is_valid


def test_missing_required_config():
    nodes, edges = linear_graph()
    nodes[1] = node("a", StepType.PROMPT, model="gpt-4o-mini", userPromptTemplate="   ")
    report = Validator().validate(nodes, edges)

    assert issue_ids(report) == ["missing-config-a-userPromptTemplate"]
    issue = report.errors[0]
    assert issue.node_id == "a"
    assert issue.field == "userPromptTemplate"
    assert issue.severity == ValidationSeverity.ERROR


def test_invalid_config_value():
    nodes, edges = linear_graph()
    nodes[1] = node("a", StepType.PROMPT, temperature=5, **PROMPT_CONFIG)
    report = Validator().validate(nodes, edges)
    assert issue_ids(report) == ["invalid-config-a-temperature"]
    assert not report.is_valid


def test_unreachable_nodes_are_warnings():
    nodes, edges = linear_graph()
    nodes.append(node("lonely", StepType.LOG))
    nodes.append(node("island", StepType.LOG))
    edges.append(edge("e3", "lonely", "island", "passthrough", "data"))
    report = Validator().validate(nodes, edges)

    assert report.is_valid
    ids = issue_ids(report)
    assert "unreachable-lonely" in ids
    assert "unreachable-island" in ids
    messages = {i.node_id: i.message for i in report.warnings if i.id.startswith("unreachable")}
    assert "no incoming connections" in messages["lonely"]
    assert "not reachable" in messages["island"]


def test_orphaned_edges_are_reported_and_ignored():
    nodes, edges = linear_graph()
    edges.append(edge("ghost", "a", "deleted"))
    report = Validator().validate(nodes, edges)
    assert issue_ids(report) == ["orphan-edge-ghost"]
    assert report.is_valid


def test_port_warnings():
    nodes, edges = linear_graph()
    edges[1] = edge("e2", "a", "e", source_port="bogus")
    report = Validator().validate(nodes, edges)
    assert "unknown-source-port-e2" in issue_ids(report)


def test_rejected_approval_port_never_activates():
    nodes = [
        node("s", StepType.START),
        node("h", StepType.WAIT_FOR_HUMAN, promptMessage="Ship it?"),
        node("e", StepType.END),
        node("x", StepType.END),
    ]
    edges = [
        edge("e1", "s", "h", target_port="data"),
        edge("e2", "h", "e", source_port="approved"),
        edge("e3", "h", "x", source_port="rejected"),
    ]
    report = Validator().validate(nodes, edges)

    ids = issue_ids(report)
    assert "inactive-port-e3" in ids
    assert "inactive-port-e2" not in ids
    assert report.is_valid


def test_multiple_inputs_on_single_port():
    nodes = [
        node("s", StepType.START),
        node("l1", StepType.LOG),
        node("l2", StepType.LOG),
        node("a", StepType.PROMPT, **PROMPT_CONFIG),
        node("e", StepType.END),
    ]
    edges = [
        edge("e1", "s", "l1", target_port="data"),
        edge("e2", "s", "l2", target_port="data"),
        edge("e3", "l1", "a", source_port="passthrough"),
        edge("e4", "l2", "a", source_port="passthrough"),
        edge("e5", "a", "e"),
    ]
    report = Validator().validate(nodes, edges)
    assert issue_ids(report) == ["multiple-inputs-a-input"]


def test_exit_warnings():
    nodes = [node("s", StepType.START), node("a", StepType.PROMPT, **PROMPT_CONFIG)]
    edges = [edge("e1", "s", "a")]
    report = Validator().validate(nodes, edges)
    assert issue_ids(report) == ["no-end", "no-output-a"]
    assert report.is_valid


def test_unconnected_required_input():
    nodes, edges = linear_graph()
    edges[0] = edge("e1", "s", "a", target_port="context")
    report = Validator().validate(nodes, edges)
    ids = issue_ids(report)
    assert "unknown-target-port-e1" in ids
    assert "unconnected-input-a-input" in ids


def test_nodes_without_incoming_edges_only_report_unreachable():
    nodes, edges = linear_graph()
    nodes.append(node("x", StepType.PROMPT, **PROMPT_CONFIG))
    edges.append(edge("e3", "x", "e"))
    report = Validator().validate(nodes, edges)
    assert issue_ids(report) == ["unreachable-x"]


def test_validation_is_deterministic():
    nodes, edges = linear_graph()
    nodes.append(node("x", StepType.PROMPT))
    validator = Validator()
    assert validator.validate(nodes, edges) == validator.validate(nodes, edges)


def test_checks_do_not_short_circuit():
    nodes = [node("a", StepType.PROMPT), node("b", StepType.LOG)]
    report = Validator().validate(nodes, [])
    ids = issue_ids(report)
    assert "no-start" in ids
    assert "missing-config-a-model" in ids
    assert "missing-config-a-userPromptTemplate" in ids
    assert "no-end" in ids


def test_find_reachable():
    edges = [edge("1", "a", "b"), edge("2", "b", "c"), edge("3", "x", "y")]
    assert find_reachable(["a"], edges) == {"a", "b", "c"}
