import argparse
import logging
import os
import sys

from bicpa import BiCPAScheduler, SchedulerConfig
from data import Cluster, ConfigurationError, ConvergenceAnomaly, StaleStateError
from loaders import generate_random_workflow, load_platform, load_workflow
from simulation import ReplaySimulator
from utils import format_report_line, format_schedule, plot_schedule_gantt, validate_task_dependencies

logger = logging.getLogger(__name__)


def build_parser():
    parser = argparse.ArgumentParser(description="Schedule a moldable-task workflow with biCPA")

    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--dag", type=str, help="Workflow file (.dot PTG or JSON)")
    source.add_argument("--random-tasks", type=int, metavar="N", help="Generate a random workflow of N compute tasks")

    parser.add_argument("--platform", type=str, help="Platform description (JSON)")
    parser.add_argument("--nodes", type=int, default=8, help="Number of nodes when no platform file is given")
    parser.add_argument("--with-communications", action="store_true",
                        help="Account for data redistributions; work becomes makespan * peak node usage")
    parser.add_argument("--seed", type=int, default=None, help="Seed of the random workflow generator")
    parser.add_argument("--log-level", type=str, default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--gantt", type=str, metavar="PATH",
                        help="Save the Gantt chart of the perfect-equity schedule to PATH")
    return parser


def run(args):
    if args.dag:
        graph = load_workflow(args.dag)
        dag_name = os.path.basename(args.dag)
    else:
        payload_range = (1e5, 1e7) if args.with_communications else None
        graph = generate_random_workflow(args.random_tasks, payload_range=payload_range, seed=args.seed)
        dag_name = f"random-{args.random_tasks}"

    if args.platform:
        cluster = load_platform(args.platform)
        platform_name = os.path.basename(args.platform)
    else:
        cluster = Cluster.homogeneous(args.nodes)
        platform_name = f"cluster-{args.nodes}"

    simulator = ReplaySimulator.for_cluster(cluster, with_communications=args.with_communications)
    scheduler = BiCPAScheduler(graph, cluster, simulator,
                               SchedulerConfig(with_communications=args.with_communications))
    reports = scheduler.schedule()

    for report in reports:
        print(format_report_line(report, platform_name, dag_name))

    if args.gantt:
        selected = reports[0]
        scheduler.replay(selected.assumed_cluster_size)
        try:
            is_valid, violations = validate_task_dependencies(graph)
            if not is_valid:
                for v in violations:
                    logger.warning(v['detail'])
            logger.debug("\n" + format_schedule(graph, cluster))
            plot_schedule_gantt(graph, cluster,
                                title=f"biCPA {selected.tag} ({selected.assumed_cluster_size} nodes assumed)",
                                save_path=args.gantt)
            logger.info(f"Gantt chart saved to {args.gantt}")
        finally:
            scheduler.round_controller.reset()

    return reports


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format='%(levelname)s: %(message)s')

    try:
        run(args)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2
    except (ConvergenceAnomaly, StaleStateError) as e:
        logger.error(f"Scheduling aborted: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
