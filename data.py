from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Dict, Iterator, List, Mapping, NamedTuple, Optional, Tuple

import networkx as nx

logger = logging.getLogger(__name__)


####################################
# SECTION: ERRORS
####################################

class ConfigurationError(ValueError):
    """Invalid cluster or workflow description. Raised before any round runs."""


class ConvergenceAnomaly(RuntimeError):
    """The allocation inner loop exceeded its iteration cap without saturating."""


class StaleStateError(RuntimeError):
    """Mutable round state was found where a clean round was expected."""


####################################
# SECTION: CORE DATA STRUCTURES
####################################

class TaskKind(Enum):
    """
    TaskKind defines the role of a vertex in the workflow graph:
      - ROOT: Zero-cost entry sentinel, placed on the whole cluster.
      - END: Zero-cost exit sentinel.
      - COMPUTE: Moldable data-parallel task following Amdahl's law.
      - TRANSFER: Data redistribution between two compute tasks.
    """
    ROOT = 0
    END = 1
    COMPUTE = 2
    TRANSFER = 3


class DependencyKind(Enum):
    """
    DependencyKind tags an edge of the workflow graph:
      - FLOW: Precedence constraint declared by the workflow.
      - RESOURCE: Synthetic edge serializing two tasks that share a node.
    """
    FLOW = 0
    RESOURCE = 1


@dataclass
class Task:
    """Task record stored in the graph arena and addressed by its handle"""
    handle: int
    name: str
    kind: TaskKind
    amount: float = 0.0  # Total work units (COMPUTE)
    alpha: float = 0.0  # Sequential fraction (COMPUTE)
    payload: float = 0.0  # Bytes to redistribute (TRANSFER)
    # Levels, refreshed by every level analysis pass
    bottom_level: float = 0.0
    top_level: float = 0.0
    precedence_level: int = 0
    # Working allocation size and the per-cluster-size allocations (k -> size)
    allocation_size: int = 1
    iterative_allocations: Mapping[int, int] = field(default_factory=dict)
    # Concrete placement, valid once the task has been mapped
    nodes: List[int] = field(default_factory=list)
    start_time: float = -1.0
    estimated_finish_time: float = -1.0

    @property
    def is_compute(self) -> bool:
        return self.kind == TaskKind.COMPUTE

    @property
    def is_transfer(self) -> bool:
        return self.kind == TaskKind.TRANSFER

    @property
    def is_mapped(self) -> bool:
        return self.estimated_finish_time >= 0.0

    def clear_placement(self):
        self.nodes = []
        self.start_time = -1.0
        self.estimated_finish_time = -1.0


@dataclass
class Node:
    """A compute node (workstation) of the cluster"""
    index: int
    name: str
    power: float
    available_at: float = 0.0  # Earliest time the node can start a new task
    last_scheduled_task: Optional[int] = None  # Handle of the latest task placed on it

    def reset(self):
        self.available_at = 0.0
        self.last_scheduled_task = None


class ScheduleResult(NamedTuple):
    """Simulated outcome of the schedule built for one assumed cluster size"""
    assumed_cluster_size: int
    makespan: float
    work: float
    peak_node_usage: int


####################################
# CLASS: WorkflowGraph
####################################

class WorkflowGraph:
    """
    Arena of Task records plus a directed graph of dependencies between task
    handles. Every edge carries a 'kind' attribute (DependencyKind).
    """

    def __init__(self):
        self.tasks: List[Task] = []
        self.graph = nx.DiGraph()
        self._by_name: Dict[str, int] = {}
        self._flow_order: Optional[List[int]] = None

    def __len__(self):
        return len(self.tasks)

    def __iter__(self) -> Iterator[Task]:
        return iter(self.tasks)

    def __getitem__(self, handle: int) -> Task:
        return self.tasks[handle]

    def add_task(self, name: str, kind: TaskKind, amount: float = 0.0, alpha: float = 0.0,
                 payload: float = 0.0) -> Task:
        if name in self._by_name:
            raise ConfigurationError(f"Duplicate task name '{name}'")
        task = Task(handle=len(self.tasks), name=name, kind=kind,
                    amount=float(amount), alpha=float(alpha), payload=float(payload))
        self.tasks.append(task)
        self._by_name[name] = task.handle
        self.graph.add_node(task.handle)
        self._flow_order = None
        return task

    def add_dependency(self, parent: int, child: int, kind: DependencyKind = DependencyKind.FLOW):
        if parent == child:
            raise ConfigurationError(f"Task '{self.tasks[parent].name}' cannot depend on itself")
        self.graph.add_edge(parent, child, kind=kind)
        if kind == DependencyKind.FLOW:
            self._flow_order = None

    def has_dependency(self, parent: int, child: int) -> bool:
        return self.graph.has_edge(parent, child)

    def get(self, name: str) -> Task:
        try:
            return self.tasks[self._by_name[name]]
        except KeyError:
            raise ConfigurationError(f"Unknown task '{name}'") from None

    def _sentinel(self, kind: TaskKind) -> Task:
        matches = [t for t in self.tasks if t.kind == kind]
        if len(matches) != 1:
            raise ConfigurationError(f"Workflow must contain exactly one {kind.name} task, found {len(matches)}")
        return matches[0]

    @property
    def root(self) -> Task:
        return self._sentinel(TaskKind.ROOT)

    @property
    def end(self) -> Task:
        return self._sentinel(TaskKind.END)

    def compute_tasks(self) -> List[Task]:
        return [t for t in self.tasks if t.is_compute]

    # ------------------------------------------------------------------
    #   Adjacency
    # ------------------------------------------------------------------
    def successors(self, handle: int, kind: Optional[DependencyKind] = DependencyKind.FLOW) -> List[int]:
        return [child for child, attrs in self.graph.succ[handle].items()
                if kind is None or attrs['kind'] == kind]

    def predecessors(self, handle: int, kind: Optional[DependencyKind] = DependencyKind.FLOW) -> List[int]:
        return [parent for parent, attrs in self.graph.pred[handle].items()
                if kind is None or attrs['kind'] == kind]

    def compute_successors(self, handle: int) -> List[Tuple[Optional[int], int]]:
        """
        Flow successors of a task, jumping over transfer tasks.

        Returns:
            List of (transfer_handle or None, successor_handle) pairs, in edge
            insertion order.
        """
        result = []
        for child in self.successors(handle):
            if self.tasks[child].is_transfer:
                result.append((child, self.successors(child)[0]))
            else:
                result.append((None, child))
        return result

    def compute_predecessors(self, handle: int) -> List[Tuple[Optional[int], int]]:
        """Flow predecessors of a task, jumping over transfer tasks."""
        result = []
        for parent in self.predecessors(handle):
            if self.tasks[parent].is_transfer:
                result.append((parent, self.predecessors(parent)[0]))
            else:
                result.append((None, parent))
        return result

    def resource_edges(self) -> List[Tuple[int, int]]:
        return [(u, v) for u, v, kind in self.graph.edges(data='kind') if kind == DependencyKind.RESOURCE]

    def remove_resource_edges(self) -> int:
        edges = self.resource_edges()
        self.graph.remove_edges_from(edges)
        return len(edges)

    def flow_order(self) -> List[int]:
        """Task handles in a topological order of the flow dependencies (cached until the flow edges change)."""
        if self._flow_order is None:
            flow = nx.subgraph_view(
                self.graph, filter_edge=lambda u, v: self.graph.edges[u, v]['kind'] == DependencyKind.FLOW)
            self._flow_order = list(nx.topological_sort(flow))
        return self._flow_order

    # ------------------------------------------------------------------
    #   Precondition checks on loader output
    # ------------------------------------------------------------------
    def validate(self):
        """
        Check the structural preconditions the scheduler relies on.

        Raises:
            ConfigurationError: if the graph is empty, cyclic, lacks a unique
                root/end sentinel, has a transfer task without exactly one
                parent and one child, has out-of-range compute parameters or a
                compute task disconnected from root or end.
        """
        if not self.tasks:
            raise ConfigurationError("Workflow graph is empty")
        root, end = self.root, self.end

        if not nx.is_directed_acyclic_graph(self.graph):
            raise ConfigurationError("Workflow graph contains a cycle")

        if self.predecessors(root.handle):
            raise ConfigurationError(f"Root task '{root.name}' has predecessors")
        if self.successors(end.handle):
            raise ConfigurationError(f"End task '{end.name}' has successors")

        for task in self.tasks:
            if task.is_transfer:
                parents, children = self.predecessors(task.handle), self.successors(task.handle)
                if len(parents) != 1 or len(children) != 1:
                    raise ConfigurationError(
                        f"Transfer '{task.name}' must have exactly one parent and one child "
                        f"(has {len(parents)} and {len(children)})")
                if self.tasks[parents[0]].is_transfer or self.tasks[children[0]].is_transfer:
                    raise ConfigurationError(f"Transfer '{task.name}' is chained to another transfer")
                if task.payload < 0:
                    raise ConfigurationError(f"Transfer '{task.name}' has a negative payload")
            elif task.is_compute:
                if task.amount < 0:
                    raise ConfigurationError(f"Task '{task.name}' has a negative amount ({task.amount})")
                if not 0.0 <= task.alpha <= 1.0:
                    raise ConfigurationError(f"Task '{task.name}' has alpha outside [0, 1] ({task.alpha})")

        reachable = nx.descendants(self.graph, root.handle) | {root.handle}
        reaching = nx.ancestors(self.graph, end.handle) | {end.handle}
        for task in self.tasks:
            if task.handle not in reachable:
                raise ConfigurationError(f"Task '{task.name}' is not reachable from '{root.name}'")
            if task.handle not in reaching:
                raise ConfigurationError(f"Task '{task.name}' does not lead to '{end.name}'")

        logger.debug(f"Workflow validated: {len(self.compute_tasks())} compute tasks, "
                     f"{sum(t.is_transfer for t in self.tasks)} transfers, "
                     f"{self.graph.number_of_edges()} edges")


####################################
# CLASS: Cluster
####################################

class Cluster:
    """Ordered set of identical compute nodes interconnected by a uniform network"""

    def __init__(self, nodes: List[Node], bandwidth: float = 1.25e8, latency: float = 1e-4):
        if not nodes:
            raise ConfigurationError("Cluster must comprise at least one node")
        powers = {n.power for n in nodes}
        if len(powers) != 1:
            raise ConfigurationError(f"Cluster must be homogeneous, found node powers {sorted(powers)}")
        if nodes[0].power <= 0:
            raise ConfigurationError(f"Node power must be positive, got {nodes[0].power}")
        if bandwidth <= 0 or latency < 0:
            raise ConfigurationError(f"Invalid network parameters (bandwidth={bandwidth}, latency={latency})")
        self.nodes = nodes
        self.bandwidth = bandwidth
        self.latency = latency

    @classmethod
    def homogeneous(cls, num_nodes: int, power: float = 1.0, bandwidth: float = 1.25e8,
                    latency: float = 1e-4, prefix: str = "node") -> "Cluster":
        width = len(str(max(num_nodes - 1, 0)))
        nodes = [Node(index=i, name=f"{prefix}-{i:0{width}d}", power=power) for i in range(num_nodes)]
        return cls(nodes, bandwidth=bandwidth, latency=latency)

    def __len__(self):
        return len(self.nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes)

    def __getitem__(self, index: int) -> Node:
        return self.nodes[index]

    @property
    def power(self) -> float:
        return self.nodes[0].power

    def reset(self):
        for node in self.nodes:
            node.reset()
