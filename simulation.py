from abc import ABC, abstractmethod
import logging
from typing import Dict, List, Sequence, Tuple

import networkx as nx

from bicpa import estimate_execution_time
from data import Cluster, StaleStateError, TaskKind, WorkflowGraph

logger = logging.getLogger(__name__)


class Simulator(ABC):
    """
    Capability used by the scheduler to evaluate mapped schedules.

    Implementations own their execution state, which must be cleared by
    reset_execution_state() between two evaluation rounds.
    """

    @abstractmethod
    def evaluate(self, graph: WorkflowGraph, cluster: Cluster) -> Tuple[float, int]:
        """Execute the mapped schedule and return (makespan, peak_node_usage)."""

    @abstractmethod
    def estimate_transfer_time(self, src_nodes: Sequence[int], dst_nodes: Sequence[int], nbytes: float) -> float:
        """Duration of a redistribution of 'nbytes' from 'src_nodes' to 'dst_nodes'."""

    @abstractmethod
    def reset_execution_state(self):
        """Forget everything about the previous evaluation."""


class ReplaySimulator(Simulator):
    """
    Replays a mapped schedule in dependency order.

    Flow and resource edges are both honoured: a compute task starts once all
    of its parents have finished and all of its nodes are idle. Transfers are
    modeled as a 1D block redistribution over a uniform network:

        latency + nbytes / (bandwidth * min(|src|, |dst|))

    A transfer between identical node sets is local and costs nothing. With
    communications disabled every transfer is instantaneous.
    """

    def __init__(self, bandwidth: float = 1.25e8, latency: float = 1e-4, with_communications: bool = False):
        if bandwidth <= 0 or latency < 0:
            raise ValueError(f"Invalid network parameters (bandwidth={bandwidth}, latency={latency})")
        self.bandwidth = bandwidth
        self.latency = latency
        self.with_communications = with_communications
        self.start_times: Dict[int, float] = {}
        self.finish_times: Dict[int, float] = {}
        self.node_available: List[float] = []
        self.clock = 0.0

    @classmethod
    def for_cluster(cls, cluster: Cluster, with_communications: bool = False) -> "ReplaySimulator":
        return cls(bandwidth=cluster.bandwidth, latency=cluster.latency, with_communications=with_communications)

    def estimate_transfer_time(self, src_nodes, dst_nodes, nbytes):
        if not self.with_communications or nbytes <= 0:
            return 0.0
        if not src_nodes or not dst_nodes or set(src_nodes) == set(dst_nodes):
            return 0.0
        return self.latency + nbytes / (self.bandwidth * min(len(src_nodes), len(dst_nodes)))

    def reset_execution_state(self):
        self.start_times.clear()
        self.finish_times.clear()
        self.node_available = []
        self.clock = 0.0

    def evaluate(self, graph, cluster):
        if self.finish_times:
            raise StaleStateError("Simulator still holds the state of a previous evaluation")
        self.node_available = [0.0] * len(cluster)

        for handle in nx.topological_sort(graph.graph):
            task = graph[handle]
            parents = graph.predecessors(handle, kind=None)
            ready = max((self.finish_times[p] for p in parents), default=0.0)

            if task.kind == TaskKind.ROOT:
                start = finish = 0.0
            elif task.kind == TaskKind.END:
                start = finish = ready
            elif task.is_transfer:
                src = graph[graph.predecessors(handle)[0]].nodes
                dst = graph[graph.successors(handle)[0]].nodes
                start = ready
                finish = start + self.estimate_transfer_time(src, dst, task.payload)
            else:
                if not task.nodes:
                    raise StaleStateError(f"Task '{task.name}' has not been mapped")
                start = max([ready] + [self.node_available[n] for n in task.nodes])
                finish = start + estimate_execution_time(task, len(task.nodes), cluster.power)
                for n in task.nodes:
                    self.node_available[n] = finish

            self.start_times[handle] = start
            self.finish_times[handle] = finish

        self.clock = self.finish_times[graph.end.handle]
        peak = self.peak_node_usage()
        logger.debug(f"Replay finished at {self.clock:.3f} using {peak} nodes")
        return self.clock, peak

    def peak_node_usage(self) -> int:
        """Number of nodes that executed some work during the last evaluation."""
        return sum(1 for t in self.node_available if t > 0.0)
