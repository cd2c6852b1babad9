from bicpa import VariantReport, compute_levels, map_allocations
from data import Cluster
from utils import (create_and_visualize_task_graph, format_report_line, format_schedule, plot_schedule_gantt,
                   validate_task_dependencies)


def test_format_report_line():
    report = VariantReport("min-sum", 3, 0.5, 1.25, 40.0, 75.5, 3)
    assert format_report_line(report, "cluster.json", "ptg.dot") == \
        "0.500000:1.250000:min-sum:cluster.json:ptg.dot:40.000:75.500:3"


def test_format_schedule(fork_graph):
    cluster = Cluster.homogeneous(1)
    map_allocations(fork_graph, cluster)
    lines = format_schedule(fork_graph, cluster).splitlines()
    assert lines[0].startswith("Task")
    assert set(lines[1]) == {"-"}
    assert lines[2].split()[0] == "A"
    assert lines[3].split()[0] == "B"
    assert lines[3].endswith("node-0")


def test_validator_accepts_mapped_schedule(diamond_graph):
    map_allocations(diamond_graph, Cluster.homogeneous(2))
    is_valid, violations = validate_task_dependencies(diamond_graph)
    assert is_valid
    assert violations == []


def test_validator_reports_violations(fork_graph):
    cluster = Cluster.homogeneous(1)
    map_allocations(fork_graph, cluster)
    b = fork_graph.get("B")
    b.start_time, b.estimated_finish_time = 5.0, 10.0

    is_valid, violations = validate_task_dependencies(fork_graph)

    assert not is_valid
    types = {v['type'] for v in violations}
    assert types == {"Resource Dependency", "Node Overlap"}
    assert all(v['task'] == "B" for v in violations)


def test_validator_reports_unmapped_tasks(chain_graph):
    is_valid, violations = validate_task_dependencies(chain_graph)
    assert not is_valid
    assert [v['type'] for v in violations] == ["Unmapped Task", "Unmapped Task"]


def test_gantt_chart_is_saved(tmp_path, diamond_graph):
    cluster = Cluster.homogeneous(2)
    map_allocations(diamond_graph, cluster)
    path = tmp_path / "gantt.png"
    plot_schedule_gantt(diamond_graph, cluster, save_path=str(path))
    assert path.exists()


def test_task_graph_is_saved(tmp_path, transfer_graph):
    compute_levels(transfer_graph, 1.0)
    path = tmp_path / "graph.png"
    create_and_visualize_task_graph(transfer_graph, save_path=str(path))
    assert path.exists()
