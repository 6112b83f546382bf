import time
import argparse, os, json, csv, logging
import random
import numpy as np
from typing import Dict

from cosmo_dpgo.agents import PGOAgentCoordinator
from cosmo_dpgo.bootstrap import BootstrapError
from cosmo_dpgo.config import CoordinationConfig, UpdateRule
from cosmo_dpgo.runner import ManualClock, TeamRunner, TeamRunResult
from cosmo_dpgo_solver.loader import LoaderConfig, TeamDataset, load_team_dataset, make_synthetic_team
from cosmo_dpgo_solver.optimizer import LiftedPoseGraphOptimizer, OptimizerConfig
from cosmo_dpgo_solver.robust import SUPPORTED_KERNELS
from cosmo_dpgo_common.bandwidth import BandwidthTracker
from cosmo_dpgo_common.resource_monitor import ResourceMonitor
from cosmo_dpgo_ros2.impair import ImpairmentPolicy
from cosmo_dpgo_ros2.qos import channel_profiles

logger = logging.getLogger("cosmo_dpgo.cli")


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Distributed pose-graph optimisation over a simulated or ROS 2 team.")
    src = ap.add_mutually_exclusive_group(required=True)
    src.add_argument("--dataset", help="Path to a team dataset JSON")
    src.add_argument("--synthetic", type=int, metavar="N", help="Generate a synthetic team with N robots")
    ap.add_argument("--export-path", required=True, help="Directory to write outputs")
    ap.add_argument("--quat-order", choices=["wxyz", "xyzw"], default="wxyz", help="Quaternion order in file")
    ap.add_argument("--log", default=os.environ.get("COSMO_LOG", "INFO"), help="Logging level")
    # synthetic team
    ap.add_argument("--poses-per-robot", type=int, default=20, help="Synthetic trajectory length")
    ap.add_argument("--dimension", type=int, choices=[2, 3], default=3, help="Synthetic team dimension")
    ap.add_argument("--outliers-per-pair", type=int, default=0, help="Corrupted shared loop closures per robot pair")
    # optimiser
    ap.add_argument("--rank", type=int, default=5, help="Relaxation rank r of the lifted poses")
    ap.add_argument("--step-size", type=float, default=1.0, help="Gradient step scale")
    ap.add_argument("--robust", choices=["none", *SUPPORTED_KERNELS], default="gnc_tls", help="Robust kernel")
    ap.add_argument("--robust-k", type=float, default=None, help="Robust tuning parameter")
    ap.add_argument("--robust-inner-iters", type=int, default=10,
                    help="UPDATE epochs between robust weight rounds")
    ap.add_argument("--max-iterations", type=int, default=500, help="Terminate after this many epochs")
    ap.add_argument("--rel-change-tol", type=float, default=1e-5,
                    help="Relative cost change below which an agent is ready to terminate")
    # coordination
    ap.add_argument("--update-rule", choices=[r.value for r in UpdateRule], default=UpdateRule.ROUND_ROBIN.value,
                    help="How the next executing agent is selected")
    ap.add_argument("--max-delayed-iterations", type=int, default=3,
                    help="Rounds an agent may wait for neighbours before using stale data")
    ap.add_argument("--max-init-steps", type=int, default=30, help="Distributed initialisation attempts")
    ap.add_argument("--weight-threshold", type=float, default=1e-6, help="Weight convergence threshold")
    ap.add_argument("--inter-update-sleep", type=float, default=0.0, help="Seconds between hand-offs")
    ap.add_argument("--timeout", type=float, default=15.0, help="Heartbeat timeout (seconds)")
    ap.add_argument("--settle-delay", type=float, default=3.0, help="Seconds agent 0 waits before initialising")
    ap.add_argument("--complete-reset", action="store_true", help="Return agents to IDLE on reset")
    ap.add_argument("--no-publish-iterate", action="store_true", help="Do not track the per-iteration trajectory")
    ap.add_argument("--seed", type=int, default=0, help="Seed for the lifting matrix, scheduler and generator")
    # run
    ap.add_argument("--transport", choices=["inproc", "ros2"], default="inproc",
                    help="Simulate the whole team in-process or run one agent over ROS 2")
    ap.add_argument("--agent-id", type=int, default=0, help="Agent hosted by this process (ros2 transport)")
    ap.add_argument("--tick", type=float, default=0.1, help="Tick period in seconds")
    ap.add_argument("--max-ticks", type=int, default=5000, help="Give up after this many ticks")
    ap.add_argument("--loss", type=float, default=0.0, help="Random message loss probability (inproc)")
    ap.add_argument("--ros2-topic-prefix", default="/cosmo_dpgo", help="Topic prefix for the ROS 2 transport")
    ap.add_argument("--ros2-reliability", choices=["reliable", "best_effort"], default=None,
                    help="Override reliability on every channel")
    ap.add_argument("--ros2-depth", type=int, default=None, help="Override queue depth on every channel")
    ap.add_argument("--ros2-qos", action="append", default=[], metavar="CHANNEL=POLICY[:DEPTH]",
                    help="Per-channel QoS override, e.g. status=best_effort:5 (repeatable)")
    ap.add_argument("--resource-interval", type=float, default=None,
                    help="Resource sampling interval in seconds (default: COSMO_RESOURCE_INTERVAL or 0.5)")
    return ap.parse_args(argv)


def ensure_dir(p):
    os.makedirs(p, exist_ok=True)


def build_config(args, out_dir: str) -> CoordinationConfig:
    opt = OptimizerConfig(
        dimension=args.dimension,
        relaxation_rank=args.rank,
        step_size=args.step_size,
        robust_kind=None if args.robust == "none" else args.robust,
        robust_threshold=args.robust_k,
        robust_opt_inner_iters=args.robust_inner_iters,
        max_iterations=args.max_iterations,
        relative_change_tolerance=args.rel_change_tol,
    )
    cfg = CoordinationConfig(
        optimizer=opt,
        update_rule=args.update_rule,
        publish_iterate=not args.no_publish_iterate,
        complete_reset=args.complete_reset,
        max_distributed_init_steps=args.max_init_steps,
        max_delayed_iterations=args.max_delayed_iterations,
        weight_convergence_threshold=args.weight_threshold,
        inter_update_sleep_time=args.inter_update_sleep,
        timeout_threshold=args.timeout,
        settle_delay=args.settle_delay,
        seed=args.seed,
        log_dir=os.path.join(out_dir, "logs"),
    ).apply_env()
    cfg.validate()
    return cfg


def load_dataset(args) -> TeamDataset:
    if args.dataset:
        dataset = load_team_dataset(args.dataset, LoaderConfig(quaternion_order=args.quat_order))
        args.dimension = dataset.dimension
        return dataset
    return make_synthetic_team(
        args.synthetic,
        args.poses_per_robot,
        dimension=args.dimension,
        outliers_per_pair=args.outliers_per_pair,
        seed=args.seed,
    )


def export_trajectories(trajectories: Dict[int, np.ndarray], out_dir: str) -> None:
    """One CSV per agent: index, translation, row-major rotation."""
    for rid, traj in sorted(trajectories.items()):
        d = traj.shape[1]
        path = os.path.join(out_dir, f"trajectory_agent_{rid}.csv")
        with open(path, "w", newline="") as f:
            w = csv.writer(f)
            w.writerow(["index", *[f"t{i}" for i in range(d)], *[f"r{i}{j}" for i in range(d) for j in range(d)]])
            for idx, pose in enumerate(traj):
                w.writerow([idx, *pose[:, d].tolist(), *pose[:, :d].reshape(-1).tolist()])


def run_inproc(args, dataset: TeamDataset, cfg: CoordinationConfig, out_dir: str) -> TeamRunResult:
    # impairment windows are measured on simulated time
    clock = ManualClock()
    if args.loss > 0.0:
        impairment = ImpairmentPolicy({"seed": cfg.seed, "random_loss_p": args.loss}, out_dir=out_dir, clock=clock)
    else:
        impairment = ImpairmentPolicy.from_env(clock=clock)
    bandwidth = BandwidthTracker()
    runner = TeamRunner(dataset, cfg, tick_period=args.tick, impairment=impairment,
                        bandwidth=bandwidth, clock=clock)
    result = runner.run(max_ticks=args.max_ticks)
    bandwidth.log_summary(logger)
    bandwidth.export_json(os.path.join(out_dir, "bandwidth.json"))
    return result


def run_ros2(args, dataset: TeamDataset, cfg: CoordinationConfig, out_dir: str) -> PGOAgentCoordinator:
    from cosmo_dpgo_ros2.bus import Ros2MessageBus

    profiles = channel_profiles(reliability=args.ros2_reliability, depth=args.ros2_depth, overrides=args.ros2_qos)
    bus = Ros2MessageBus(args.agent_id, topic_prefix=args.ros2_topic_prefix, qos_profiles=profiles)
    optimizer = LiftedPoseGraphOptimizer(args.agent_id, cfg.optimizer, seed=cfg.seed)
    agent = PGOAgentCoordinator(args.agent_id, bus, optimizer, cfg, pose_graph_source=dataset.measurements_for)
    try:
        for _ in range(args.max_ticks):
            agent.spin_once()
            if agent.terminated:
                break
            time.sleep(args.tick)
    finally:
        bus.close()
    return agent


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=args.log.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    seed_env = os.environ.get("COSMO_RUN_SEED")
    if seed_env:
        try:
            args.seed = int(seed_env)
        except ValueError:
            logger.warning("Ignoring non-integer COSMO_RUN_SEED=%r", seed_env)
    random.seed(args.seed)
    np.random.seed(args.seed)

    out_dir = os.path.abspath(args.export_path)
    ensure_dir(out_dir)

    dataset = load_dataset(args)
    cfg = build_config(args, out_dir)
    logger.info("Team of %d robots, %d measurements, dimension %d",
                dataset.num_robots, len(dataset.measurements), dataset.dimension)

    resource_monitor = ResourceMonitor(args.resource_interval)
    resource_monitor.start({"transport": args.transport, "num_robots": dataset.num_robots,
                            "update_rule": cfg.update_rule.value})
    started = time.perf_counter()
    summary: Dict[str, object] = {"transport": args.transport}
    resource_monitor.mark("optimize")
    try:
        if args.transport == "ros2":
            agent = run_ros2(args, dataset, cfg, out_dir)
            trajectories = {agent.agent_id: agent.final_trajectory} if agent.final_trajectory is not None else {}
            summary.update(agent=agent.summary())
        else:
            result = run_inproc(args, dataset, cfg, out_dir)
            trajectories = result.trajectories
            summary.update(
                ticks=result.ticks,
                terminated=result.terminated,
                latest_epoch=result.latest_epoch,
                total_cost=result.total_cost,
                agents={str(k): v for k, v in result.summaries.items()},
                failed={str(k): v for k, v in result.failed.items()},
            )
        resource_monitor.mark("export")
        export_trajectories(trajectories, out_dir)
    except BootstrapError as exc:
        logger.error("Bootstrap failed: %s", exc)
        raise
    finally:
        resource_monitor.stop()
        resource_monitor.log_summary(logger)
        resource_monitor.export_json(os.path.join(out_dir, "resource_usage.json"))

    summary["wall_time_s"] = time.perf_counter() - started
    with open(os.path.join(out_dir, "summary.json"), "w", encoding="utf-8") as f:
        json.dump(summary, f, indent=2, default=str)
    logger.info("Wrote %d trajectories and summary to %s", len(trajectories), out_dir)
    return summary


if __name__ == "__main__":
    main()
