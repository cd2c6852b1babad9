from dataclasses import dataclass
import logging
import time as time_module
from types import MappingProxyType
from typing import List, NamedTuple, Optional

import numpy as np

from data import (Cluster, ConfigurationError, ConvergenceAnomaly, DependencyKind, Node, ScheduleResult,
                  StaleStateError, Task, TaskKind, WorkflowGraph)
from selection import select_variants

logger = logging.getLogger(__name__)


@dataclass
class SchedulerConfig:
    """Run-time options of the biCPA scheduler"""
    with_communications: bool = False  # Count transfers in timings and use makespan * peak as work
    max_inner_iterations: Optional[int] = None  # Override of the per-size allocation loop cap


class VariantReport(NamedTuple):
    """Final evaluation of one selected allocation column"""
    tag: str
    assumed_cluster_size: int
    alloc_time: float
    mapping_time: float
    makespan: float
    work: float
    peak_node_usage: int


####################################
# SECTION: PERFORMANCE MODEL
####################################

def estimate_execution_time(task: Task, nworkstations: int, power: float) -> float:
    """
    Amdahl's law estimate of the execution time of a task on 'nworkstations'
    identical nodes of computing power 'power':

        (alpha + (1 - alpha) / n) * amount / power

    Sentinels and transfers have no computation cost.
    """
    if not task.is_compute:
        return 0.0
    if nworkstations < 1:
        raise ValueError(f"Task '{task.name}' cannot run on {nworkstations} nodes")
    return (task.alpha + (1.0 - task.alpha) / nworkstations) * (task.amount / power)


def estimate_area(task: Task, nworkstations: int, power: float) -> float:
    return estimate_execution_time(task, nworkstations, power) * nworkstations


def compute_total_work(graph: WorkflowGraph, power: float) -> float:
    """Sum of the areas of all compute tasks under their current allocation."""
    return sum(estimate_area(t, len(t.nodes) or t.allocation_size, power) for t in graph.compute_tasks())


####################################
# SECTION: LEVEL ANALYSIS
####################################

def set_bottom_levels(graph: WorkflowGraph, power: float):
    """
    Bottom level of a task: its own estimated execution time plus the largest
    bottom level among its successors. Transfers are jumped over and their
    cost is not accumulated. The end task has a bottom level of 0.

    Single pass over the flow dependencies in reverse topological order.
    """
    for handle in reversed(graph.flow_order()):
        task = graph[handle]
        if task.is_transfer:
            continue
        if task.kind == TaskKind.END:
            task.bottom_level = 0.0
            continue

        max_bottom_level = None
        for _, child in graph.compute_successors(handle):
            child_level = graph[child].bottom_level
            if max_bottom_level is None or max_bottom_level < child_level:
                max_bottom_level = child_level

        task.bottom_level = estimate_execution_time(task, task.allocation_size, power) + (max_bottom_level or 0.0)


def set_top_levels(graph: WorkflowGraph, power: float):
    """
    Top level of a task: the largest (top level + execution time) among its
    predecessors, i.e. the task's own cost is excluded. Transfer costs are
    excluded as for bottom levels. The root task has a top level of 0.
    """
    for handle in graph.flow_order():
        task = graph[handle]
        if task.is_transfer:
            continue
        if task.kind == TaskKind.ROOT:
            task.top_level = 0.0
            continue

        max_top_level = None
        for _, parent in graph.compute_predecessors(handle):
            parent_task = graph[parent]
            parent_level = parent_task.top_level + estimate_execution_time(parent_task, parent_task.allocation_size,
                                                                           power)
            if max_top_level is None or max_top_level < parent_level:
                max_top_level = parent_level

        task.top_level = max_top_level or 0.0


def set_precedence_levels(graph: WorkflowGraph):
    """Precedence level: number of compute ancestors on the longest path from the root (root = 0)."""
    for handle in graph.flow_order():
        task = graph[handle]
        if task.is_transfer:
            continue
        if task.kind == TaskKind.ROOT:
            task.precedence_level = 0
            continue

        level = -1
        for _, parent in graph.compute_predecessors(handle):
            parent_level = graph[parent].precedence_level + 1
            if level < parent_level:
                level = parent_level

        task.precedence_level = level


def compute_levels(graph: WorkflowGraph, power: float):
    set_bottom_levels(graph, power)
    set_top_levels(graph, power)
    set_precedence_levels(graph)


def critical_path(graph: WorkflowGraph) -> List[Task]:
    """
    Walk from the root to the end task, following at each step the successor
    with the largest bottom level (the first one seen wins ties).

    Returns:
        The compute tasks met along the way, in path order.
    """
    path = []
    end = graph.end.handle
    handle = graph.root.handle
    while handle != end:
        max_bl_child = None
        for _, child in graph.compute_successors(handle):
            if max_bl_child is None or graph[max_bl_child].bottom_level < graph[child].bottom_level:
                max_bl_child = child
        handle = max_bl_child
        if graph[handle].is_compute:
            path.append(graph[handle])
    return path


####################################
# SECTION: ALLOCATION (CPA / biCPA)
####################################

def initialize_average_area(graph: WorkflowGraph, power: float) -> float:
    """
    Average area assuming the cluster comprises a single node, i.e. the sum of
    the sequential execution times of all compute tasks.
    """
    return sum(estimate_execution_time(task, 1, power) for task in graph.compute_tasks())


def set_multiple_allocations(graph: WorkflowGraph, cluster: Cluster,
                             max_inner_iterations: Optional[int] = None) -> np.ndarray:
    """
    Determine one allocation per task for every assumed cluster size k = 1..N.

    For a given k this is the CPA allocation procedure, a trade-off between the
    critical path length (TCP) and the average area (TA):
      - While TCP > TA, find the task of the critical path that benefits the
        most from one extra node and increase its allocation, then update TA
        and TCP.
      - Stop early when no task of the critical path can grow without
        exceeding k nodes (saturation).

    biCPA wraps this procedure in an outer loop over the assumed size of the
    cluster, which changes the way TA is computed. The allocations reached for
    each k are stored in task.iterative_allocations[k]. The last iteration
    (k = N) is the plain CPA allocation.

    Args:
        graph: Validated workflow graph.
        cluster: Target homogeneous cluster.
        max_inner_iterations: Cap on the inner loop iterations for one k.
            Defaults to (#compute tasks * k + 1), which the loop can never
            legitimately exceed.

    Returns:
        Read-only array of shape (len(graph), N) with the allocation of task
        'handle' for size k at [handle, k - 1]; zero for non-compute tasks.

    Raises:
        ConfigurationError: if the cluster is empty.
        StaleStateError: if the allocations were already computed.
        ConvergenceAnomaly: if the inner loop exceeds its cap.
    """
    nworkstations = len(cluster)
    if nworkstations == 0:
        raise ConfigurationError("Cannot compute allocations for an empty cluster")

    compute_tasks = graph.compute_tasks()
    if any(task.iterative_allocations for task in compute_tasks):
        raise StaleStateError("Iterative allocations have already been computed for this workflow")

    power = cluster.power
    for task in compute_tasks:
        task.allocation_size = 1
    set_bottom_levels(graph, power)

    # Initial values assume a single node, each task being allocated one node.
    TA = initialize_average_area(graph, power)
    TCP = graph.root.bottom_level
    logger.info(f"Initial values for TA and TCP are ({TA:.3f}, {TCP:.3f})")

    allocations = np.zeros((len(graph), nworkstations), dtype=int)
    saturation = False
    iteration = 0

    for current_nworkstations in range(1, nworkstations + 1):
        logger.debug(f"Assume the cluster comprises {current_nworkstations} nodes "
                     f"(TA = {TA:.3f}, TCP = {TCP:.3f})")
        cap = max_inner_iterations if max_inner_iterations is not None \
            else len(compute_tasks) * current_nworkstations + 1
        inner_iterations = 0

        while TCP > TA and not saturation:
            if inner_iterations >= cap:
                raise ConvergenceAnomaly(
                    f"Allocation for {current_nworkstations} nodes did not converge after "
                    f"{inner_iterations} iterations (TA = {TA:.3f}, TCP = {TCP:.3f})")

            logger.debug(f"[{iteration}] CPA_TA = {TA * current_nworkstations / nworkstations:.2f} "
                         f"BICPA_TA = {TA:.2f}, TCP = {TCP:.2f}")

            selected_task = None
            maximum_gain = -1.0
            for task in critical_path(graph):
                n = task.allocation_size
                # Reduction of the per-node execution time brought by one more node
                if n < current_nworkstations:
                    current_gain = (estimate_execution_time(task, n, power) / n -
                                    estimate_execution_time(task, n + 1, power) / (n + 1))
                else:
                    current_gain = 0.0

                if current_gain > 0.0 and maximum_gain < current_gain:
                    maximum_gain = current_gain
                    selected_task = task

            if selected_task is None:
                saturation = True
            else:
                selected_task.allocation_size += 1
                n = selected_task.allocation_size
                TA += (estimate_area(selected_task, n, power) -
                       estimate_area(selected_task, n - 1, power)) / current_nworkstations
                set_bottom_levels(graph, power)
                TCP = graph.root.bottom_level
                logger.debug(f"Task '{selected_task.name}' now uses {n} nodes (gain {maximum_gain:.4f})")

            inner_iterations += 1
            iteration += 1

        # A trade-off has been reached for this cluster size
        for task in compute_tasks:
            task.iterative_allocations[current_nworkstations] = task.allocation_size
            allocations[task.handle, current_nworkstations - 1] = task.allocation_size

        TA = (TA * current_nworkstations) / (current_nworkstations + 1)
        saturation = False

    for task in compute_tasks:
        task.iterative_allocations = MappingProxyType(task.iterative_allocations)
    allocations.flags.writeable = False

    logger.info(f"Allocations built for {nworkstations} cluster sizes in {iteration} iterations")
    return allocations


def set_allocations_from_iteration(graph: WorkflowGraph, nworkstations: int):
    """Copy the allocations computed for an assumed cluster size into the working allocation sizes."""
    for task in graph.compute_tasks():
        try:
            task.allocation_size = task.iterative_allocations[nworkstations]
        except KeyError:
            raise ConfigurationError(
                f"No allocation computed for task '{task.name}' and cluster size {nworkstations}") from None


####################################
# SECTION: MAPPING
####################################

def get_best_node_set(cluster: Cluster, time: float) -> List[Node]:
    """
    Order the nodes for a task that cannot start before 'time'.

    Nodes available at or before 'time' come first, latest available first, so
    that idle times are minimized. Nodes available after 'time' follow,
    earliest available first. Both orders are stable with respect to the
    node index.
    """
    before = [node for node in cluster if node.available_at <= time]
    after = [node for node in cluster if node.available_at > time]
    before.sort(key=lambda node: node.available_at, reverse=True)
    after.sort(key=lambda node: node.available_at)
    return before + after


def add_resource_dependency(graph: WorkflowGraph, task: Task, node: Node):
    previous = node.last_scheduled_task
    if previous is not None and previous != task.handle and not graph.has_dependency(previous, task.handle):
        graph.add_dependency(previous, task.handle, DependencyKind.RESOURCE)
    node.last_scheduled_task = task.handle


def map_allocations(graph: WorkflowGraph, cluster: Cluster, simulator=None, with_communications: bool = False) -> float:
    """
    List-schedule the compute tasks with their current allocation sizes.

    Tasks are considered by decreasing bottom level (then increasing
    precedence level), which is a topological order. Each task gets the first
    'allocation_size' nodes of get_best_node_set() and starts when its data
    has arrived and all of these nodes are free. Resource dependencies are
    added between consecutive tasks of a node.

    Args:
        graph: Workflow whose compute tasks hold the allocation to apply.
        cluster: Cluster in its freshly reset state.
        simulator: Provides estimate_transfer_time(); only needed with communications.
        with_communications: Account for the transfer tasks in the timing.

    Returns:
        Estimated makespan, i.e. the estimated finish time of the end task.
    """
    if graph.resource_edges():
        raise StaleStateError("Resource dependencies from a previous round are still in the graph")
    for node in cluster:
        if node.available_at < 0:
            raise StaleStateError(f"Node '{node.name}' has a negative availability ({node.available_at})")
    if with_communications and simulator is None:
        raise ValueError("A simulator is required to estimate transfer times")

    power = cluster.power
    nworkstations = len(cluster)

    root = graph.root
    if not root.is_mapped:
        root.nodes = [node.index for node in cluster]
        root.start_time = 0.0
        root.estimated_finish_time = 0.0

    set_bottom_levels(graph, power)
    set_precedence_levels(graph)
    ordered = sorted(graph.compute_tasks(), key=lambda t: (-t.bottom_level, t.precedence_level, t.handle))

    for task in ordered:
        if not 1 <= task.allocation_size <= nworkstations:
            raise ConfigurationError(
                f"Task '{task.name}' is allocated {task.allocation_size} nodes on a {nworkstations}-node cluster")

        predecessors = graph.compute_predecessors(task.handle)
        ready = max(graph[parent].estimated_finish_time for _, parent in predecessors)

        chosen = get_best_node_set(cluster, ready)[:task.allocation_size]
        chosen_indices = [node.index for node in chosen]

        data_arrival = ready
        for transfer, parent in predecessors:
            parent_task = graph[parent]
            arrival = parent_task.estimated_finish_time
            if transfer is not None:
                comm = graph[transfer]
                duration = 0.0
                if with_communications:
                    duration = simulator.estimate_transfer_time(parent_task.nodes, chosen_indices, comm.payload)
                comm.nodes = sorted(set(parent_task.nodes) | set(chosen_indices))
                comm.start_time = arrival
                comm.estimated_finish_time = arrival + duration
                arrival += duration
            data_arrival = max(data_arrival, arrival)

        task.start_time = max([data_arrival] + [node.available_at for node in chosen])
        task.estimated_finish_time = task.start_time + estimate_execution_time(task, task.allocation_size, power)
        task.nodes = chosen_indices

        for node in chosen:
            node.available_at = task.estimated_finish_time
            add_resource_dependency(graph, task, node)

        logger.debug(f"Task '{task.name}' mapped on {task.allocation_size} nodes: "
                     f"start={task.start_time:.3f}, finish={task.estimated_finish_time:.3f}")

    end = graph.end
    end.start_time = max(graph[parent].estimated_finish_time for _, parent in graph.compute_predecessors(end.handle))
    end.estimated_finish_time = end.start_time
    return end.estimated_finish_time


####################################
# CLASS: RoundController
####################################

class RoundController:
    """Restores the graph, the cluster and the simulator between two evaluation rounds"""

    def __init__(self, graph: WorkflowGraph, cluster: Cluster, simulator):
        self.graph = graph
        self.cluster = cluster
        self.simulator = simulator

    def reset(self):
        removed = self.graph.remove_resource_edges()
        self.cluster.reset()
        for task in self.graph:
            task.clear_placement()
        self.simulator.reset_execution_state()
        compute_levels(self.graph, self.cluster.power)
        logger.debug(f"Round reset: {removed} resource dependencies removed")


####################################
# CLASS: BiCPAScheduler
####################################

class BiCPAScheduler:
    """
    Drives the whole biCPA heuristic:
      1. compute the allocations for every assumed cluster size,
      2. map and simulate each of them,
      3. select the trade-off allocations and evaluate them again.
    """

    def __init__(self, graph: WorkflowGraph, cluster: Cluster, simulator, config: Optional[SchedulerConfig] = None):
        if len(cluster) == 0:
            raise ConfigurationError("Cluster must comprise at least one node")
        graph.validate()
        self.graph = graph
        self.cluster = cluster
        self.simulator = simulator
        self.config = config or SchedulerConfig()
        simulator_communications = getattr(simulator, "with_communications", self.config.with_communications)
        if simulator_communications != self.config.with_communications:
            raise ConfigurationError(
                f"Scheduler and simulator disagree on communications "
                f"(scheduler: {self.config.with_communications}, simulator: {simulator_communications})")
        self.round_controller = RoundController(graph, cluster, simulator)
        self.allocations: Optional[np.ndarray] = None
        self.results: List[ScheduleResult] = []
        self.alloc_time = 0.0
        self.mapping_time = 0.0

        compute_levels(graph, cluster.power)

    def compute_allocations(self) -> np.ndarray:
        start = time_module.time()
        self.allocations = set_multiple_allocations(self.graph, self.cluster, self.config.max_inner_iterations)
        self.alloc_time = time_module.time() - start
        logger.info(f"Allocations built in {self.alloc_time:f} seconds")

        if logger.isEnabledFor(logging.DEBUG):
            for task in self.graph.compute_tasks():
                sizes = ", ".join(f"{k}: {n}" for k, n in task.iterative_allocations.items())
                logger.debug(f"Intermediate allocations of task '{task.name}' are {{{sizes}}}")
        return self.allocations

    def replay(self, nworkstations: int) -> ScheduleResult:
        """
        Map and simulate the allocation computed for 'nworkstations'. The
        mapped state is left in place for inspection; the caller resets it.
        """
        set_allocations_from_iteration(self.graph, nworkstations)
        map_allocations(self.graph, self.cluster, self.simulator, self.config.with_communications)
        makespan, peak = self.simulator.evaluate(self.graph, self.cluster)
        if self.config.with_communications:
            work = makespan * peak
        else:
            work = compute_total_work(self.graph, self.cluster.power)
        return ScheduleResult(nworkstations, makespan, work, peak)

    def run_round(self, nworkstations: int) -> ScheduleResult:
        try:
            return self.replay(nworkstations)
        finally:
            self.round_controller.reset()

    def evaluate_all(self) -> List[ScheduleResult]:
        if self.allocations is None:
            self.compute_allocations()
        self.results = []
        for k in range(1, len(self.cluster) + 1):
            result = self.run_round(k)
            logger.info(f"[{k}] makespan = {result.makespan:.3f}, work = {result.work:.3f}, "
                        f"peak_alloc = {result.peak_node_usage}")
            self.results.append(result)
        return self.results

    def schedule(self) -> List[VariantReport]:
        """
        Run the complete heuristic.

        Returns:
            One VariantReport per selected allocation, in the order
            perfect-equity, best-makespan, best-work, min-sum, baseline.
        """
        if self.allocations is None:
            self.compute_allocations()

        start = time_module.time()
        self.evaluate_all()
        variants = select_variants(self.results)
        self.mapping_time = time_module.time() - start

        logger.info("Selected cluster sizes: " +
                    ", ".join(f"{tag} = {r.assumed_cluster_size}" for tag, r in variants.items()))

        reports = []
        for tag, selected in variants.items():
            result = self.run_round(selected.assumed_cluster_size)
            reports.append(VariantReport(tag, result.assumed_cluster_size, self.alloc_time, self.mapping_time,
                                         result.makespan, result.work, result.peak_node_usage))
        return reports
