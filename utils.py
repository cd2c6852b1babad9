import matplotlib.pyplot as plt
import networkx as nx

from data import DependencyKind, TaskKind


def format_report_line(report, platform_name="-", dag_name="-"):
    """One colon-separated line per selected variant, in the historical biCPA output layout."""
    return (f"{report.alloc_time:f}:{report.mapping_time:f}:{report.tag}:{platform_name}:{dag_name}:"
            f"{report.makespan:.3f}:{report.work:.3f}:{report.peak_node_usage}")


def format_schedule(graph, cluster):
    """
    Builds a formatted table of the mapped compute tasks:
        Task  |  Nodes  |  Start  |  Finish  |  Level  |  Placement

    Args:
        graph: WorkflowGraph whose compute tasks have been mapped.
        cluster: The Cluster the tasks were mapped on (used for node names).

    Returns:
        A multi-line string containing the formatted schedule table.
    """
    name_width = max([len(t.name) for t in graph.compute_tasks()] + [4])
    header = f"{'Task':<{name_width}}  {'Nodes':>5}  {'Start':>9}  {'Finish':>9}  {'BL':>9}  Placement"
    sep_line = "-" * len(header)

    lines = [header, sep_line]

    ordered = sorted(graph.compute_tasks(), key=lambda t: (t.start_time, t.handle))
    for t in ordered:
        if t.is_mapped:
            placement = ",".join(cluster[n].name for n in t.nodes)
        else:
            placement = "UNMAPPED"
        lines.append(
            f"{t.name:<{name_width}}  {t.allocation_size:>5}  {t.start_time:9.3f}  "
            f"{t.estimated_finish_time:9.3f}  {t.bottom_level:9.3f}  {placement}"
        )

    return "\n".join(lines)


def validate_task_dependencies(graph, epsilon=1e-9):
    """
    Verifies that a mapped schedule is consistent:
      - every compute task starts after all of its predecessors (flow and
        resource dependencies, transfers included) finish,
      - two compute tasks sharing a node do not overlap in time,
      - every compute task runs on exactly 'allocation_size' distinct nodes.

    Args:
        graph: WorkflowGraph after map_allocations().
        epsilon: float tolerance to allow small rounding differences

    Returns:
        (is_valid, violations): Tuple where:
          - is_valid: bool, True if no violations
          - violations: list of dicts describing each violation
    """
    violations = []

    for task in graph.compute_tasks():
        if not task.is_mapped:
            violations.append({
                'type': 'Unmapped Task',
                'task': task.name,
                'detail': f"Task {task.name} has not been mapped"
            })
            continue

        if len(set(task.nodes)) != len(task.nodes) or len(task.nodes) != task.allocation_size:
            violations.append({
                'type': 'Invalid Placement',
                'task': task.name,
                'detail': f"Task {task.name} needs {task.allocation_size} distinct nodes, got {task.nodes}"
            })

        for parent in graph.predecessors(task.handle, kind=None):
            pred_task = graph[parent]
            if pred_task.kind == TaskKind.ROOT:
                continue
            if not pred_task.is_mapped:
                violations.append({
                    'type': 'Unmapped Predecessor',
                    'task': task.name,
                    'predecessor': pred_task.name,
                    'detail': f"Task {task.name} depends on unmapped task {pred_task.name}"
                })
                continue
            kind = graph.graph.edges[parent, task.handle]['kind']
            if (pred_task.estimated_finish_time - task.start_time) > epsilon:
                violations.append({
                    'type': 'Resource Dependency' if kind == DependencyKind.RESOURCE else 'Flow Dependency',
                    'task': task.name,
                    'predecessor': pred_task.name,
                    'detail': f"Task {task.name} starts at {task.start_time:.3f} but "
                              f"{pred_task.name} finishes at {pred_task.estimated_finish_time:.3f}"
                })

    # Node sharing: tasks placed on the same node must not overlap
    by_node = {}
    for task in graph.compute_tasks():
        if task.is_mapped:
            for n in task.nodes:
                by_node.setdefault(n, []).append(task)
    for n, tasks in by_node.items():
        tasks.sort(key=lambda t: (t.start_time, t.estimated_finish_time))
        for first, second in zip(tasks, tasks[1:]):
            if (first.estimated_finish_time - second.start_time) > epsilon:
                violations.append({
                    'type': 'Node Overlap',
                    'task': second.name,
                    'predecessor': first.name,
                    'detail': f"Tasks {first.name} and {second.name} overlap on node {n}"
                })

    is_valid = (len(violations) == 0)
    return is_valid, violations


def plot_schedule_gantt(graph, cluster, title="biCPA Schedule", save_path=None):
    """
    Draws the mapped compute tasks as a Gantt chart, one row per node.

    Returns:
        The matplotlib Figure. It is saved to 'save_path' when given and shown
        otherwise.
    """
    fig, ax = plt.subplots(figsize=(15, max(4, 0.5 * len(cluster) + 2)))

    tasks = [t for t in graph.compute_tasks() if t.is_mapped]
    max_completion_time = max([t.estimated_finish_time for t in tasks] + [1e-9])
    colors = plt.cm.tab20.colors

    for i, task in enumerate(tasks):
        duration = task.estimated_finish_time - task.start_time
        color = colors[i % len(colors)]
        for n in task.nodes:
            ax.barh(n, duration, left=task.start_time, height=0.6,
                    align='center', color=color, edgecolor='black')
            ax.text(task.start_time + duration / 2, n, task.name,
                    va='center', ha='center', color='black', fontsize=8)

    # Configure axis
    ax.set_yticks(range(len(cluster)))
    ax.set_yticklabels([node.name for node in cluster])
    ax.set_xlabel("Time")
    ax.set_ylabel("Node")
    ax.set_title(title)
    ax.grid(True, axis='x', linestyle='--', alpha=0.7)
    ax.set_xlim(0, max_completion_time * 1.05)
    ax.invert_yaxis()

    plt.tight_layout()
    if save_path:
        fig.savefig(save_path, bbox_inches='tight')
        plt.close(fig)
    else:
        plt.show()
    return fig


def create_and_visualize_task_graph(graph, save_path=None, show_resource_edges=False):
    """
    Draws the workflow layered by precedence level. Transfers are drawn as
    small squares, resource dependencies (if requested) as dashed edges.

    Parameters:
        graph: WorkflowGraph with precedence levels computed.
        save_path: Path to save the visualization (shown on screen otherwise).
        show_resource_edges: Also draw the synthetic resource dependencies.
    """
    G = nx.DiGraph()
    for task in graph:
        if task.is_transfer:
            parent = graph.predecessors(task.handle)[0]
            layer = 2 * graph[parent].precedence_level + 1
        else:
            layer = 2 * task.precedence_level
        G.add_node(task.handle, layer=layer)
    for u, v, kind in graph.graph.edges(data='kind'):
        if kind == DependencyKind.FLOW or show_resource_edges:
            G.add_edge(u, v, kind=kind)

    plt.figure(figsize=(12, 10))
    pos = nx.multipartite_layout(G, subset_key='layer', align='horizontal')
    pos = {h: (x, -y) for h, (x, y) in pos.items()}

    compute = [t.handle for t in graph if not t.is_transfer]
    transfers = [t.handle for t in graph if t.is_transfer]
    node_colors = ['#DDDDDD' if graph[h].kind in (TaskKind.ROOT, TaskKind.END) else '#FF9999' for h in compute]

    nx.draw_networkx_nodes(G, pos, nodelist=compute, node_color=node_colors, node_size=700, alpha=0.9)
    nx.draw_networkx_nodes(G, pos, nodelist=transfers, node_color='#99CCFF', node_shape='s', node_size=200)
    flow_edges = [(u, v) for u, v, k in G.edges(data='kind') if k == DependencyKind.FLOW]
    resource_edges = [(u, v) for u, v, k in G.edges(data='kind') if k == DependencyKind.RESOURCE]
    nx.draw_networkx_edges(G, pos, edgelist=flow_edges, arrows=True, arrowsize=15, width=1.5, edge_color='#333333')
    if resource_edges:
        nx.draw_networkx_edges(G, pos, edgelist=resource_edges, arrows=True, style='dashed', edge_color='#AA3333')
    nx.draw_networkx_labels(G, pos, labels={h: graph[h].name for h in compute}, font_size=10, font_weight='bold')

    plt.title("Task Dependency Graph", fontsize=18, pad=20)
    plt.axis('off')

    if save_path:
        plt.tight_layout()
        plt.savefig(save_path, bbox_inches='tight', pad_inches=0.1)
        plt.close()
    else:
        plt.show()
