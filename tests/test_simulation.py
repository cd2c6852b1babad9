import pytest

from bicpa import map_allocations
from data import Cluster, StaleStateError
from simulation import ReplaySimulator


def test_transfer_time_model():
    simulator = ReplaySimulator(bandwidth=1e6, latency=0.5, with_communications=True)
    assert simulator.estimate_transfer_time([0, 1], [2], 1e6) == pytest.approx(1.5)
    assert simulator.estimate_transfer_time([0, 1], [2, 3], 1e6) == pytest.approx(1.0)
    # Local redistribution and empty payloads are free
    assert simulator.estimate_transfer_time([1, 0], [0, 1], 1e6) == 0.0
    assert simulator.estimate_transfer_time([0], [1], 0.0) == 0.0


def test_transfers_are_free_without_communications():
    simulator = ReplaySimulator(bandwidth=1e6, latency=0.5)
    assert simulator.estimate_transfer_time([0], [1], 1e9) == 0.0


def test_invalid_network_parameters():
    with pytest.raises(ValueError):
        ReplaySimulator(bandwidth=0.0)


def test_replay_matches_mapping(fork_graph):
    cluster = Cluster.homogeneous(1)
    simulator = ReplaySimulator.for_cluster(cluster)
    map_allocations(fork_graph, cluster)

    makespan, peak = simulator.evaluate(fork_graph, cluster)

    assert makespan == pytest.approx(15.0)
    assert peak == 1
    assert simulator.start_times[fork_graph.get("B").handle] == pytest.approx(10.0)


def test_replay_with_communications(transfer_graph):
    cluster = Cluster.homogeneous(2, bandwidth=1e6, latency=0.0)
    simulator = ReplaySimulator.for_cluster(cluster, with_communications=True)
    transfer_graph.get("B").allocation_size = 2
    map_allocations(transfer_graph, cluster, simulator, with_communications=True)

    makespan, peak = simulator.evaluate(transfer_graph, cluster)

    assert makespan == pytest.approx(16.0)
    assert peak == 2
    assert simulator.finish_times[transfer_graph.get("A->B").handle] == pytest.approx(11.0)


def test_stale_state_is_detected(fork_graph):
    cluster = Cluster.homogeneous(1)
    simulator = ReplaySimulator.for_cluster(cluster)
    map_allocations(fork_graph, cluster)
    simulator.evaluate(fork_graph, cluster)
    with pytest.raises(StaleStateError):
        simulator.evaluate(fork_graph, cluster)

    simulator.reset_execution_state()
    assert simulator.evaluate(fork_graph, cluster)[0] == pytest.approx(15.0)


def test_unmapped_task_is_rejected(fork_graph):
    simulator = ReplaySimulator()
    with pytest.raises(StaleStateError):
        simulator.evaluate(fork_graph, Cluster.homogeneous(1))
