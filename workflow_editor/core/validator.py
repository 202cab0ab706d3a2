"""Structural and semantic validation of workflow graphs."""

from collections import defaultdict, deque
from typing import Any, Dict, Iterable, List, Optional, Set
from pydantic import ValidationError

from ..models.core import (
    StepType,
    ValidationIssue,
    ValidationReport,
    ValidationSeverity,
    WorkflowEdge,
    WorkflowNode,
)
from .logging import get_logger
from .step_registry import get_step_metadata, ports_compatible

logger = get_logger(__name__)

ERROR = ValidationSeverity.ERROR
WARNING = ValidationSeverity.WARNING


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def _name(node: WorkflowNode) -> str:
    return node.label or node.id


class Validator:
    """
    Derives validation issues from a graph.

    ``validate`` is a pure function of its arguments: every check runs
    independently (no short-circuiting) and issue ids are deterministic, so
    validating an unchanged graph twice yields identical reports.
    """

    def validate(self, nodes: Iterable[WorkflowNode], edges: Iterable[WorkflowEdge]) -> ValidationReport:
        nodes = list(nodes)
        edges = list(edges)
        node_map = {node.id: node for node in nodes}
        # Edges whose endpoints both exist; orphans are reported separately.
        live_edges = [e for e in edges if e.source in node_map and e.target in node_map]

        issues: List[ValidationIssue] = []
        self._check_entry_points(nodes, issues)
        self._check_reachability(nodes, live_edges, issues)
        self._check_required_config(nodes, issues)
        self._check_orphaned_edges(edges, node_map, issues)
        self._check_config_values(nodes, issues)
        self._check_ports(live_edges, node_map, issues)
        self._check_port_cardinality(live_edges, node_map, issues)
        self._check_exits(nodes, live_edges, issues)

        report = ValidationReport.from_issues(issues)
        logger.debug(
            f"Graph validation completed. Valid: {report.is_valid}, "
            f"Errors: {len(report.errors)}, Warnings: {len(report.warnings)}"
        )
        return report

    def _check_entry_points(self, nodes: List[WorkflowNode], issues: List[ValidationIssue]) -> None:
        starts = [n for n in nodes if n.step_type == StepType.START]
        if not starts:
            issues.append(ValidationIssue(
                id="no-start",
                severity=ERROR,
                message="Workflow must have a Start node (no entry point)",
            ))
        elif len(starts) > 1:
            issues.append(ValidationIssue(
                id="multiple-start",
                severity=ERROR,
                message=f"Workflow can only have one Start node (multiple entry points: {len(starts)})",
            ))

    def _check_reachability(
        self,
        nodes: List[WorkflowNode],
        edges: List[WorkflowEdge],
        issues: List[ValidationIssue],
    ) -> None:
        start_ids = [n.id for n in nodes if n.step_type == StepType.START]
        if not start_ids:
            return

        reachable = find_reachable(start_ids, edges)
        targets = {e.target for e in edges}
        for node in nodes:
            if node.step_type == StepType.START or node.id in reachable:
                continue
            if node.id not in targets:
                message = f'Node "{_name(node)}" has no incoming connections'
            else:
                message = f'Node "{_name(node)}" is not reachable from the Start node'
            issues.append(ValidationIssue(
                id=f"unreachable-{node.id}",
                severity=WARNING,
                message=message,
                node_id=node.id,
            ))

    def _check_required_config(self, nodes: List[WorkflowNode], issues: List[ValidationIssue]) -> None:
        for node in nodes:
            for field in get_step_metadata(node.step_type).required_fields:
                if _is_empty(node.config.get(field.key)):
                    issues.append(ValidationIssue(
                        id=f"missing-config-{node.id}-{field.key}",
                        severity=ERROR,
                        message=f'Node "{_name(node)}" is missing required field "{field.label}"',
                        node_id=node.id,
                        field=field.key,
                    ))

    def _check_orphaned_edges(
        self,
        edges: List[WorkflowEdge],
        node_map: Dict[str, WorkflowNode],
        issues: List[ValidationIssue],
    ) -> None:
        for edge in edges:
            missing = [end for end in (edge.source, edge.target) if end not in node_map]
            if missing:
                issues.append(ValidationIssue(
                    id=f"orphan-edge-{edge.id}",
                    severity=WARNING,
                    message=f"Connection references deleted node(s): {', '.join(missing)}",
                    edge_id=edge.id,
                ))

    def _check_config_values(self, nodes: List[WorkflowNode], issues: List[ValidationIssue]) -> None:
        for node in nodes:
            config_model = get_step_metadata(node.step_type).config_model
            try:
                config_model.model_validate(node.config)
            except ValidationError as e:
                reported: Set[str] = set()
                for error in e.errors(include_url=False):
                    key = str(error["loc"][0]) if error["loc"] else "config"
                    if key in reported:
                        continue
                    reported.add(key)
                    issues.append(ValidationIssue(
                        id=f"invalid-config-{node.id}-{key}",
                        severity=ERROR,
                        message=f'Node "{_name(node)}" has an invalid value for "{key}": {error["msg"]}',
                        node_id=node.id,
                        field=key,
                    ))

    def _check_ports(
        self,
        edges: List[WorkflowEdge],
        node_map: Dict[str, WorkflowNode],
        issues: List[ValidationIssue],
    ) -> None:
        for edge in edges:
            source_meta = get_step_metadata(node_map[edge.source].step_type)
            target_meta = get_step_metadata(node_map[edge.target].step_type)
            out_port = source_meta.output_port(edge.source_port)
            in_port = target_meta.input_port(edge.target_port)

            if out_port is None:
                issues.append(ValidationIssue(
                    id=f"unknown-source-port-{edge.id}",
                    severity=WARNING,
                    message=f'Connection uses undeclared output port "{edge.source_port}" '
                            f'on "{_name(node_map[edge.source])}"',
                    edge_id=edge.id,
                    node_id=edge.source,
                ))
            elif out_port.reserved:
                issues.append(ValidationIssue(
                    id=f"inactive-port-{edge.id}",
                    severity=WARNING,
                    message=f'Output "{out_port.label}" on "{_name(node_map[edge.source])}" never '
                            f"activates; connected steps will be skipped",
                    edge_id=edge.id,
                    node_id=edge.source,
                ))
            if in_port is None:
                issues.append(ValidationIssue(
                    id=f"unknown-target-port-{edge.id}",
                    severity=WARNING,
                    message=f'Connection uses undeclared input port "{edge.target_port}" '
                            f'on "{_name(node_map[edge.target])}"',
                    edge_id=edge.id,
                    node_id=edge.target,
                ))
            if out_port is not None and in_port is not None and not ports_compatible(out_port, in_port):
                issues.append(ValidationIssue(
                    id=f"incompatible-ports-{edge.id}",
                    severity=WARNING,
                    message=f"Connection joins incompatible port types "
                            f"({out_port.data_type.value} -> {in_port.data_type.value})",
                    edge_id=edge.id,
                ))

    def _check_port_cardinality(
        self,
        edges: List[WorkflowEdge],
        node_map: Dict[str, WorkflowNode],
        issues: List[ValidationIssue],
    ) -> None:
        incoming: Dict[tuple, int] = defaultdict(int)
        for edge in edges:
            incoming[(edge.target, edge.target_port)] += 1

        for (node_id, port_id), count in incoming.items():
            if count < 2:
                continue
            node = node_map[node_id]
            port = get_step_metadata(node.step_type).input_port(port_id)
            if port is not None and not port.multiple:
                issues.append(ValidationIssue(
                    id=f"multiple-inputs-{node_id}-{port_id}",
                    severity=WARNING,
                    message=f'Input "{port.label}" on "{_name(node)}" accepts one connection '
                            f"but has {count}",
                    node_id=node_id,
                ))

    def _check_exits(
        self,
        nodes: List[WorkflowNode],
        edges: List[WorkflowEdge],
        issues: List[ValidationIssue],
    ) -> None:
        if not any(n.step_type == StepType.END for n in nodes):
            issues.append(ValidationIssue(
                id="no-end",
                severity=WARNING,
                message="Workflow has no End node",
            ))

        sources = {e.source for e in edges}
        connected_inputs = {(e.target, e.target_port) for e in edges}
        targets = {e.target for e in edges}
        for node in nodes:
            if node.step_type != StepType.END and node.id not in sources:
                issues.append(ValidationIssue(
                    id=f"no-output-{node.id}",
                    severity=WARNING,
                    message=f'Node "{_name(node)}" has no outgoing connections',
                    node_id=node.id,
                ))
            # Nodes without any incoming edge are already reported as unreachable.
            if node.id not in targets:
                continue
            for port in get_step_metadata(node.step_type).inputs:
                if port.required and (node.id, port.id) not in connected_inputs:
                    issues.append(ValidationIssue(
                        id=f"unconnected-input-{node.id}-{port.id}",
                        severity=WARNING,
                        message=f'Required input "{port.label}" on "{_name(node)}" is not connected',
                        node_id=node.id,
                    ))


def find_reachable(start_ids: Iterable[str], edges: Iterable[WorkflowEdge]) -> Set[str]:
    """Find all nodes reachable from the given start nodes."""
    adjacency: Dict[str, List[str]] = defaultdict(list)
    for edge in edges:
        adjacency[edge.source].append(edge.target)

    reachable = set(start_ids)
    queue = deque(reachable)
    while queue:
        current = queue.popleft()
        for neighbor in adjacency.get(current, []):
            if neighbor not in reachable:
                reachable.add(neighbor)
                queue.append(neighbor)
    return reachable


def validate_workflow(
    nodes: Iterable[WorkflowNode],
    edges: Iterable[WorkflowEdge],
    validator: Optional[Validator] = None,
) -> ValidationReport:
    """Convenience wrapper around ``Validator.validate``."""
    return (validator or Validator()).validate(nodes, edges)
