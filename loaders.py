import json
import logging
import math
import random
from typing import Dict, Optional, Tuple

import networkx as nx

from data import Cluster, ConfigurationError, Node, TaskKind, WorkflowGraph

logger = logging.getLogger(__name__)

ROOT_NAME = "root"
END_NAME = "end"

TASK_KINDS = {
    "root": TaskKind.ROOT,
    "end": TaskKind.END,
    "compute": TaskKind.COMPUTE,
    "transfer": TaskKind.TRANSFER,
}


####################################
# FUNCTION: workflow loaders
####################################

def load_workflow(path: str) -> WorkflowGraph:
    """Load a workflow from a '.dot' (SimGrid PTG convention) or a JSON file."""
    if path.endswith(".dot"):
        return load_workflow_dot(path)
    return load_workflow_json(path)


def workflow_from_dict(description: Dict) -> WorkflowGraph:
    """
    Build a workflow from a description such as:

        {"tasks": [{"name": "root"},
                   {"name": "A", "kind": "compute", "amount": 1e9, "alpha": 0.1},
                   {"name": "A->B", "kind": "transfer", "payload": 1e6},
                   ...,
                   {"name": "end"}],
         "dependencies": [["root", "A"], ["A", "A->B"], ...]}

    Tasks named 'root' and 'end' default to the sentinel kinds, any other
    task defaults to 'compute'.
    """
    graph = WorkflowGraph()
    try:
        for entry in description["tasks"]:
            name = str(entry["name"])
            default_kind = name if name in (ROOT_NAME, END_NAME) else "compute"
            kind_name = str(entry.get("kind", default_kind)).lower()
            if kind_name not in TASK_KINDS:
                raise ConfigurationError(f"Task '{name}' has an unknown kind '{kind_name}'")
            graph.add_task(name, TASK_KINDS[kind_name],
                           amount=entry.get("amount", 0.0),
                           alpha=entry.get("alpha", 0.0),
                           payload=entry.get("payload", 0.0))

        for parent, child in description.get("dependencies", []):
            graph.add_dependency(graph.get(str(parent)).handle, graph.get(str(child)).handle)
    except ConfigurationError:
        raise
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Malformed workflow description: {e}") from e

    graph.validate()
    return graph


def load_workflow_json(path: str) -> WorkflowGraph:
    try:
        with open(path) as f:
            description = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read workflow file '{path}': {e}") from e
    graph = workflow_from_dict(description)
    logger.info(f"Loaded workflow '{path}' with {len(graph.compute_tasks())} compute tasks")
    return graph


def _dot_value(attrs: Dict, key: str, default: float = 0.0) -> float:
    value = attrs.get(key)
    if value is None:
        return default
    return float(str(value).strip('"'))


def workflow_from_dot_graph(dot: nx.DiGraph) -> WorkflowGraph:
    """
    Convert a graph read from a PTG DOT file.

    Nodes carry 'size' (amount of work) and 'alpha'. An edge carrying a
    positive 'size' is a data redistribution and becomes a transfer task named
    'parent->child'. Missing 'root'/'end' sentinels are created and linked to
    the source and sink tasks.
    """
    graph = WorkflowGraph()
    try:
        for name, attrs in dot.nodes(data=True):
            name = str(name).strip()
            # pydot may report the trailing newline of the file as a node
            if name in ("", "\\n"):
                continue
            if name == ROOT_NAME:
                graph.add_task(name, TaskKind.ROOT)
            elif name == END_NAME:
                graph.add_task(name, TaskKind.END)
            else:
                graph.add_task(name, TaskKind.COMPUTE, amount=_dot_value(attrs, "size"),
                               alpha=_dot_value(attrs, "alpha"))

        for parent, child, attrs in dot.edges(data=True):
            parent_handle = graph.get(str(parent)).handle
            child_handle = graph.get(str(child)).handle
            size = _dot_value(attrs, "size")
            if size > 0:
                transfer = graph.add_task(f"{parent}->{child}", TaskKind.TRANSFER, payload=size)
                graph.add_dependency(parent_handle, transfer.handle)
                graph.add_dependency(transfer.handle, child_handle)
            else:
                graph.add_dependency(parent_handle, child_handle)
    except ConfigurationError:
        raise
    except ValueError as e:
        raise ConfigurationError(f"Malformed DOT workflow: {e}") from e

    compute = graph.compute_tasks()
    if ROOT_NAME not in dot:
        root = graph.add_task(ROOT_NAME, TaskKind.ROOT)
        for task in compute:
            if not graph.predecessors(task.handle):
                graph.add_dependency(root.handle, task.handle)
    if END_NAME not in dot:
        end = graph.add_task(END_NAME, TaskKind.END)
        for task in compute:
            if not graph.successors(task.handle):
                graph.add_dependency(task.handle, end.handle)

    graph.validate()
    return graph


def load_workflow_dot(path: str) -> WorkflowGraph:
    try:
        dot = nx.DiGraph(nx.nx_pydot.read_dot(path))
    except (OSError, TypeError) as e:
        raise ConfigurationError(f"Cannot read DOT workflow '{path}': {e}") from e
    graph = workflow_from_dot_graph(dot)
    logger.info(f"Loaded workflow '{path}' with {len(graph.compute_tasks())} compute tasks")
    return graph


####################################
# FUNCTION: platform loader
####################################

def cluster_from_dict(description: Dict) -> Cluster:
    """
    Build a homogeneous cluster from a description such as:

        {"power": 1e9, "bandwidth": 1.25e8, "latency": 1e-4, "nodes": 16}

    'nodes' is either a count, a list of names or a list of
    {"name": ..., "power": ...} entries. Nodes are sorted by name.
    """
    try:
        power = float(description.get("power", 1.0))
        bandwidth = float(description.get("bandwidth", 1.25e8))
        latency = float(description.get("latency", 1e-4))
        node_list = description["nodes"]
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Malformed platform description: {e}") from e

    if isinstance(node_list, int):
        return Cluster.homogeneous(node_list, power=power, bandwidth=bandwidth, latency=latency)

    entries = []
    try:
        for entry in node_list:
            if isinstance(entry, dict):
                entries.append((str(entry["name"]), float(entry.get("power", power))))
            else:
                entries.append((str(entry), power))
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Malformed node entry in platform description: {e}") from e
    if len({name for name, _ in entries}) != len(entries):
        raise ConfigurationError("Platform contains duplicate node names")

    entries.sort(key=lambda e: e[0])
    nodes = [Node(index=i, name=name, power=node_power) for i, (name, node_power) in enumerate(entries)]
    return Cluster(nodes, bandwidth=bandwidth, latency=latency)


def load_platform(path: str) -> Cluster:
    try:
        with open(path) as f:
            description = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read platform file '{path}': {e}") from e
    cluster = cluster_from_dict(description)
    logger.info(f"Loaded platform '{path}' with {len(cluster)} nodes of power {cluster.power}")
    return cluster


####################################
# FUNCTION: generate_random_workflow
####################################

def generate_random_workflow(
        num_tasks: int,
        edge_prob: float = 0.3,
        amount_range: Tuple[float, float] = (1.0, 100.0),
        alpha_range: Tuple[float, float] = (0.0, 0.3),
        payload_range: Optional[Tuple[float, float]] = None,
        seed: Optional[int] = None
) -> WorkflowGraph:
    """
    Generate a layered random workflow.

    Parameters:
        num_tasks (int): Number of compute tasks.
        edge_prob (float): Probability of an extra dependency towards any task
                           of an earlier layer (each task always has at least
                           one parent in the previous layer).
        amount_range (tuple): Range of the amount of work of compute tasks.
        alpha_range (tuple): Range of the sequential fraction.
        payload_range (tuple, optional): If given, every dependency between two
                                         compute tasks goes through a transfer
                                         task with a payload in this range.
        seed (int, optional): Seed of the private random generator.

    Returns:
        WorkflowGraph: A validated workflow with root and end sentinels.
    """
    if num_tasks < 1:
        raise ConfigurationError("A random workflow needs at least one compute task")
    rng = random.Random(seed)

    # Roughly sqrt(n) layers of roughly sqrt(n) tasks
    width = max(1, int(math.sqrt(num_tasks)))
    layers = [list(range(i, min(i + width, num_tasks))) for i in range(0, num_tasks, width)]

    graph = WorkflowGraph()
    root = graph.add_task(ROOT_NAME, TaskKind.ROOT)
    handles = []
    for i in range(num_tasks):
        task = graph.add_task(f"t{i}", TaskKind.COMPUTE,
                              amount=rng.uniform(*amount_range),
                              alpha=rng.uniform(*alpha_range))
        handles.append(task.handle)

    def link(parent, child):
        if payload_range is None:
            graph.add_dependency(handles[parent], handles[child])
        else:
            transfer = graph.add_task(f"t{parent}->t{child}", TaskKind.TRANSFER, payload=rng.uniform(*payload_range))
            graph.add_dependency(handles[parent], transfer.handle)
            graph.add_dependency(transfer.handle, handles[child])

    has_child = set()
    for level, layer in enumerate(layers):
        for child in layer:
            if level == 0:
                graph.add_dependency(root.handle, handles[child])
                continue
            parents = {rng.choice(layers[level - 1])}
            for earlier in layers[:level]:
                for candidate in earlier:
                    if rng.random() < edge_prob:
                        parents.add(candidate)
            for parent in sorted(parents):
                link(parent, child)
                has_child.add(parent)

    end = graph.add_task(END_NAME, TaskKind.END)
    for i in range(num_tasks):
        if i not in has_child:
            graph.add_dependency(handles[i], end.handle)

    graph.validate()
    logger.debug(f"Generated random workflow: {num_tasks} tasks in {len(layers)} layers")
    return graph
