"""Graph Manager: topology validation and execution ordering for workflow graphs."""

from collections import deque
from typing import Dict, List, Set

from ..models.core import StepDefinition, ValidationResult, WorkflowGraph
from .exceptions import GraphValidationError
from .logging import get_logger

logger = get_logger(__name__)


CYCLE_OR_DISCONNECTED_MESSAGE = (
    "Workflow has a cycle or is disconnected. "
    "Please ensure all nodes form a single, valid flow from start to end."
)


class GraphManager:
    """Validates workflow graphs and reduces them to a linear execution order.

    The manager never mutates a graph. Ordering is deterministic: ties are
    broken by the insertion order of ``graph.steps`` and successors are
    visited in edge insertion order.
    """

    def __init__(self, allow_branching: bool = False):
        """
        Initialize the GraphManager.

        Args:
            allow_branching: Accept steps with several inputs or outputs and
                execute them in topological order as a single chain
        """
        self.allow_branching = allow_branching

    def execution_order(self, graph: WorkflowGraph) -> List[StepDefinition]:
        """
        Compute the order in which the steps of a graph are executed.

        Args:
            graph: The workflow graph to order

        Returns:
            List[StepDefinition]: Every step exactly once, each edge's source
            before its target. Empty for an empty graph.

        Raises:
            GraphValidationError: If the graph has a cycle, is disconnected or
                branches while branching is not allowed
        """
        validation_result = self.validate_graph(graph)
        if not validation_result.is_valid:
            error_msg = "; ".join(validation_result.errors)
            logger.error(f"Graph validation failed: {error_msg}")
            raise GraphValidationError(error_msg, validation_errors=validation_result.errors)

        if validation_result.warnings:
            logger.warning(f"Graph validation warnings: {'; '.join(validation_result.warnings)}")

        order = self._topological_order(graph)
        logger.debug(f"Execution order: {' -> '.join(step.name for step in order)}")
        return order

    def validate_graph(self, graph: WorkflowGraph) -> ValidationResult:
        """
        Validate a graph for topological correctness without raising.

        Args:
            graph: The workflow graph to validate

        Returns:
            ValidationResult: Validation results with errors and warnings
        """
        logger.debug(f"Validating graph with {len(graph.steps)} steps and {len(graph.edges)} edges")

        errors: List[str] = []
        warnings: List[str] = []

        if not graph.steps:
            warnings.append("Workflow has no steps")
            return ValidationResult(is_valid=True, errors=errors, warnings=warnings)

        has_cycle = len(self._topological_order(graph)) < len(graph.steps)
        disconnected = self._count_components(graph) > 1
        if has_cycle or disconnected:
            logger.debug(f"Graph rejected: cycle={has_cycle}, disconnected={disconnected}")
            errors.append(CYCLE_OR_DISCONNECTED_MESSAGE)

        self._validate_chain(graph, errors, warnings)

        result = ValidationResult(
            is_valid=len(errors) == 0,
            errors=errors,
            warnings=warnings
        )

        logger.debug(f"Graph validation completed. Valid: {result.is_valid}, "
                     f"Errors: {len(result.errors)}, Warnings: {len(result.warnings)}")

        return result

    def _topological_order(self, graph: WorkflowGraph) -> List[StepDefinition]:
        """Kahn's algorithm. Returns fewer steps than the graph holds if there is a cycle."""
        in_degree: Dict[str, int] = {step.id: 0 for step in graph.steps}
        successors: Dict[str, List[str]] = {step.id: [] for step in graph.steps}
        for edge in graph.edges:
            successors[edge.from_step].append(edge.to_step)
            in_degree[edge.to_step] += 1

        queue = deque(step.id for step in graph.steps if in_degree[step.id] == 0)
        order: List[StepDefinition] = []

        while queue:
            step_id = queue.popleft()
            order.append(graph.get_step(step_id))
            for successor in successors[step_id]:
                in_degree[successor] -= 1
                if in_degree[successor] == 0:
                    queue.append(successor)

        return order

    def _count_components(self, graph: WorkflowGraph) -> int:
        """Number of weakly connected components."""
        neighbours: Dict[str, Set[str]] = {step.id: set() for step in graph.steps}
        for edge in graph.edges:
            neighbours[edge.from_step].add(edge.to_step)
            neighbours[edge.to_step].add(edge.from_step)

        seen: Set[str] = set()
        components = 0
        for step in graph.steps:
            if step.id in seen:
                continue
            components += 1
            stack = [step.id]
            seen.add(step.id)
            while stack:
                current = stack.pop()
                for neighbour in neighbours[current]:
                    if neighbour not in seen:
                        seen.add(neighbour)
                        stack.append(neighbour)
        return components

    def _validate_chain(self, graph: WorkflowGraph, errors: List[str], warnings: List[str]):
        """
        Check that every step has at most one input and one output.

        Args:
            graph: The graph to validate
            errors: List to append errors to
            warnings: List to append warnings to
        """
        incoming: Dict[str, int] = {step.id: 0 for step in graph.steps}
        outgoing: Dict[str, int] = {step.id: 0 for step in graph.steps}
        for edge in graph.edges:
            outgoing[edge.from_step] += 1
            incoming[edge.to_step] += 1

        problems = []
        for step in graph.steps:
            if incoming[step.id] > 1:
                problems.append(f"Step '{step.name}' has {incoming[step.id]} incoming connections")
            if outgoing[step.id] > 1:
                problems.append(f"Step '{step.name}' has {outgoing[step.id]} outgoing connections")

        if not problems:
            return

        if self.allow_branching:
            warnings.append(
                f"Branching workflow will run as a single linear chain: {'; '.join(problems)}"
            )
        else:
            errors.append(
                f"Workflow must be a single chain of steps: {'; '.join(problems)}"
            )
