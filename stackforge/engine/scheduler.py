"""
Stackforge - Dependency Scheduler

Orders resource creation and deletion from the dependency graph.
Every method is a pure function of its inputs, so orders can be
recomputed at any time without side effects.
"""

from __future__ import annotations
import heapq
from typing import Collection, Dict, List, Mapping, Optional
import logging

from stackforge.engine.errors import CyclicDependency
from stackforge.engine.resolver import ReferenceResolver
from stackforge.models import DependencyGraph, ExecutionPlan, ResourceNode

logger = logging.getLogger(__name__)


class DependencyScheduler:
    """
    Topological ordering of resources.

    Creation order comes from Kahn's algorithm with ties broken by
    declaration order; deletion order is its exact reverse.
    """

    def __init__(self):
        """Initialize scheduler."""
        self.logger = logging.getLogger(__name__)

    def creation_order(self, graph: DependencyGraph) -> List[str]:
        """
        Get topologically sorted creation order.

        Args:
            graph: Resolved dependency graph

        Returns:
            Logical ids; every resource comes after all its dependencies

        Raises:
            CyclicDependency: If the graph is not acyclic
        """
        nodes = graph.nodes
        remaining: Dict[str, int] = {name: len(node.dependencies) for name, node in nodes.items()}
        dependents: Dict[str, List[str]] = {name: [] for name in nodes}
        for name, node in nodes.items():
            for dep in node.dependencies:
                dependents[dep].append(name)

        available = [
            (node.declaration_index, name)
            for name, node in nodes.items()
            if remaining[name] == 0
        ]
        heapq.heapify(available)

        result: List[str] = []
        while available:
            _, name = heapq.heappop(available)
            result.append(name)
            for dependent in dependents[name]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(available, (nodes[dependent].declaration_index, dependent))

        if len(result) != len(nodes):
            cycle = ReferenceResolver.find_cycle(nodes) or sorted(set(nodes) - set(result))
            raise CyclicDependency(cycle)
        return result

    def deletion_order(self, graph: DependencyGraph) -> List[str]:
        """Exact reverse of the creation order."""
        return list(reversed(self.creation_order(graph)))

    def waves(self, graph: DependencyGraph) -> List[List[str]]:
        """
        Group resources into waves that could be provisioned concurrently.

        A resource's wave is one more than the latest wave of its
        dependencies; within a wave names follow declaration order.
        """
        depth: Dict[str, int] = {}
        for name in self.creation_order(graph):
            deps = graph.nodes[name].dependencies
            depth[name] = 1 + max((depth[d] for d in deps), default=-1)

        grouped: Dict[int, List[str]] = {}
        for name in graph.nodes:
            grouped.setdefault(depth[name], []).append(name)
        return [grouped[level] for level in sorted(grouped)]

    def ready(
        self,
        nodes: Mapping[str, ResourceNode],
        order: List[str],
        done: Collection[str],
        started: Collection[str],
        blocked: Optional[Collection[str]] = None,
    ) -> List[str]:
        """
        Resources whose dependencies are all done and that have not started.

        Args:
            nodes: Resolved nodes
            order: Creation order, used to keep dispatch deterministic
            done: Resources already provisioned
            started: Resources dispatched (in flight or finished)
            blocked: Resources that must not be dispatched

        Returns:
            Ready logical ids in creation order
        """
        blocked = blocked or ()
        return [
            name for name in order
            if name not in started
            and name not in blocked
            and all(dep in done for dep in nodes[name].dependencies)
        ]

    def create_plan(self, stack_name: str, graph: DependencyGraph) -> ExecutionPlan:
        """
        Create an execution plan from the dependency graph.

        Args:
            stack_name: Stack the plan is for
            graph: Resolved dependency graph

        Returns:
            ExecutionPlan with creation/deletion orders and waves
        """
        order = self.creation_order(graph)
        plan = ExecutionPlan(
            stack_name=stack_name,
            creation_order=order,
            deletion_order=list(reversed(order)),
            waves=self.waves(graph),
            edges=graph.edges(),
            total_resources=len(order),
        )
        self.logger.info(
            f"Created execution plan: {plan.total_resources} resources "
            f"in {len(plan.waves)} waves"
        )
        return plan


# Singleton instance
scheduler = DependencyScheduler()


def get_scheduler() -> DependencyScheduler:
    """Get scheduler instance."""
    return scheduler
