import matplotlib

matplotlib.use("Agg")

import pytest

from data import Cluster
from loaders import workflow_from_dict


@pytest.fixture
def chain_graph():
    """root -> A -> B -> end"""
    return workflow_from_dict({
        "tasks": [
            {"name": "root"},
            {"name": "A", "amount": 100.0, "alpha": 0.1},
            {"name": "B", "amount": 50.0, "alpha": 0.5},
            {"name": "end"},
        ],
        "dependencies": [["root", "A"], ["A", "B"], ["B", "end"]],
    })


@pytest.fixture
def diamond_graph():
    """root -> {A, B} -> C -> end, fully sequential tasks"""
    return workflow_from_dict({
        "tasks": [
            {"name": "root"},
            {"name": "A", "amount": 10.0},
            {"name": "B", "amount": 20.0},
            {"name": "C", "amount": 5.0},
            {"name": "end"},
        ],
        "dependencies": [["root", "A"], ["root", "B"], ["A", "C"], ["B", "C"], ["C", "end"]],
    })


@pytest.fixture
def fork_graph():
    """root -> {A, B} -> end, two independent tasks"""
    return workflow_from_dict({
        "tasks": [
            {"name": "root"},
            {"name": "A", "amount": 10.0},
            {"name": "B", "amount": 5.0},
            {"name": "end"},
        ],
        "dependencies": [["root", "A"], ["root", "B"], ["A", "end"], ["B", "end"]],
    })


@pytest.fixture
def transfer_graph():
    """root -> A -> A->B (1 MB) -> B -> end"""
    return workflow_from_dict({
        "tasks": [
            {"name": "root"},
            {"name": "A", "amount": 10.0, "alpha": 1.0},
            {"name": "A->B", "kind": "transfer", "payload": 1e6},
            {"name": "B", "amount": 10.0, "alpha": 0.0},
            {"name": "end"},
        ],
        "dependencies": [["root", "A"], ["A", "A->B"], ["A->B", "B"], ["B", "end"]],
    })


@pytest.fixture
def cluster4():
    return Cluster.homogeneous(4)


@pytest.fixture
def deep_chain_graph():
    """root -> z0 -> ... -> z1499 -> end, free tasks except 'z750' (amount 100, alpha 0.5)"""
    names = [f"z{i}" for i in range(1500)]
    tasks = [{"name": "root"}]
    for name in names:
        if name == "z750":
            tasks.append({"name": name, "amount": 100.0, "alpha": 0.5})
        else:
            tasks.append({"name": name, "amount": 0.0})
    tasks.append({"name": "end"})
    path = ["root"] + names + ["end"]
    return workflow_from_dict({"tasks": tasks, "dependencies": [list(edge) for edge in zip(path, path[1:])]})
