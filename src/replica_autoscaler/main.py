#!/usr/bin/env python3
"""
Replica Autoscaler - Main Entry Point
Scales Kubernetes deployments toward a target utilization using Prometheus metrics
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
import threading
from typing import Any, Dict, List, Optional, Tuple

from prometheus_client import start_http_server

from .api.server import APIServer
from .config import Settings, WorkloadSettings
from .core.autoscaler import ControlLoop
from .core.controller import KubernetesReplicaPool, ReplicaController, ReplicaPool
from .core.logging_config import get_logger, log_separator, setup_logging
from .core.metrics import MetricsSource, PrometheusMetricsSource
from .core.simulation import InMemoryReplicaPool, SimulatedMetricsSource, sine_load
from .exceptions import InvalidPolicy
from .models.scaling import ScalingPolicy

logger = logging.getLogger(__name__)


class AutoscalerService:
    """Main autoscaler service: one control loop per configured workload"""

    def __init__(self, settings: Settings, simulate: bool = False, dry_run: bool = False):
        """
        Initialize the autoscaler service

        Args:
            settings: Loaded settings
            simulate: Use the simulated metrics source and in-memory pool
            dry_run: Log decisions without touching the pool

        Raises:
            InvalidPolicy: if any workload's policy is invalid
        """
        self.settings = settings
        self.simulate = simulate or settings.simulation.enabled
        self.dry_run = dry_run or settings.scaling.dry_run

        # Validate every policy up front so bad config aborts startup
        self.policies: List[Tuple[WorkloadSettings, ScalingPolicy]] = []
        seen = set()
        for workload in settings.workloads:
            key = f"{workload.namespace}/{workload.name}"
            if key in seen:
                raise InvalidPolicy(f"Workload {key} is configured more than once")
            seen.add(key)
            self.policies.append((workload, settings.build_policy(workload)))

        if not self.policies:
            raise InvalidPolicy("No workloads configured")

        self.pool = self._init_pool()
        self.loops: Dict[str, ControlLoop] = {}
        self.tasks: Dict[str, asyncio.Task] = {}
        self.api_server: Optional[APIServer] = APIServer(self) if settings.api.enabled else None

        logger.info(
            f"Replica Autoscaler Service initialized: {len(self.policies)} workload(s), "
            f"simulate={self.simulate}, dry_run={self.dry_run}"
        )
        if settings.debug:
            logger.info(f"Debug mode enabled. Settings: {settings.get_config_dict()}")

    def _init_pool(self) -> ReplicaPool:
        if self.simulate:
            return InMemoryReplicaPool()
        return KubernetesReplicaPool(
            in_cluster=self.settings.kubernetes.in_cluster,
            kubeconfig_path=self.settings.kubernetes.kubeconfig_path
        )

    def _build_metrics_source(self, policy: ScalingPolicy) -> MetricsSource:
        if self.simulate:
            sim = self.settings.simulation
            return SimulatedMetricsSource(
                sine_load(sim.base_load, sim.peak_load, sim.period),
                noise=sim.noise,
                seed=sim.seed,
                timeout=self.settings.scaling.metrics_timeout,
                metric_name=policy.metric_name
            )
        return PrometheusMetricsSource(
            url=self.settings.prometheus.url,
            query_template=self.settings.prometheus.query_template,
            timeout=self.settings.prometheus.query_timeout,
            metric_name=policy.metric_name
        )

    def _build_controller(self, policy: ScalingPolicy) -> ReplicaController:
        scaling = self.settings.scaling
        return ReplicaController(
            self.pool,
            policy,
            apply_timeout=scaling.apply_timeout,
            max_attempts=scaling.apply_max_attempts,
            backoff_initial=scaling.apply_backoff_initial,
            backoff_factor=scaling.apply_backoff_factor,
            dry_run=self.dry_run
        )

    async def build_loops(self) -> Dict[str, ControlLoop]:
        """Create one control loop per workload, seeded with the observed replica count"""
        for workload, policy in self.policies:
            replica_set = self.settings.build_replica_set(workload, policy)
            try:
                observed = await self.pool.get_replicas(replica_set)
            except Exception as e:
                logger.warning(
                    f"Could not read replicas for {replica_set.key}, "
                    f"starting from {replica_set.current_replicas}: {e}"
                )
            else:
                if not policy.min_replicas <= observed <= policy.max_replicas:
                    logger.warning(
                        f"{replica_set.key} runs {observed} replicas, outside "
                        f"[{policy.min_replicas}, {policy.max_replicas}]; the first cycle will correct it"
                    )
                replica_set = self.settings.build_replica_set(workload, policy, observed)

            self.loops[replica_set.key] = ControlLoop(
                replica_set,
                policy,
                self._build_metrics_source(policy),
                self._build_controller(policy)
            )
        return self.loops

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._signal_handler, sig)
            except NotImplementedError:
                signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(self._signal_handler, signum))

    def _signal_handler(self, signum):
        """Handle shutdown signals"""
        logger.info(f"Received signal {signum}, shutting down...")
        self.stop()

    def _start_api(self) -> None:
        api = self.settings.api
        start_http_server(api.metrics_port)
        logger.info(f"Prometheus metrics server started on :{api.metrics_port}")

        if self.api_server is not None:
            api_thread = threading.Thread(
                target=self.api_server.run,
                kwargs={'host': api.host, 'port': api.port},
                daemon=True
            )
            api_thread.start()
            logger.info(f"API server started on {api.host}:{api.port}")

    async def run(self, serve_api: bool = True) -> Dict[str, Any]:
        """Run all control loops until they are stopped"""
        log_separator(logger, "REPLICA AUTOSCALER STARTING", 60)
        if not self.loops:
            await self.build_loops()

        if serve_api:
            self._start_api()
        self._install_signal_handlers()

        self.tasks = {
            name: asyncio.create_task(loop.run(), name=f"control-loop:{name}")
            for name, loop in self.loops.items()
        }
        results = await asyncio.gather(*self.tasks.values(), return_exceptions=True)

        for name, result in zip(self.tasks, results):
            if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                logger.error(f"Control loop {name} exited with error: {result}")

        if self.api_server is not None:
            self.api_server.shutdown()
        log_separator(logger, "REPLICA AUTOSCALER STOPPED", 60)
        return self.get_status()

    def stop(self) -> None:
        """Ask every loop to finish its current cycle and exit"""
        for loop in self.loops.values():
            loop.stop()

    def is_healthy(self) -> bool:
        if not self.loops:
            return False
        return all(loop.running for loop in self.loops.values())

    def get_status(self) -> Dict[str, Any]:
        return {
            "simulate": self.simulate,
            "dry_run": self.dry_run,
            "loops": {name: loop.get_status() for name, loop in self.loops.items()}
        }


def load_settings(config_path: Optional[str]) -> Settings:
    if config_path and os.path.exists(config_path):
        return Settings.load_from_yaml_with_env_override(config_path)
    return Settings()


def main(argv: Optional[List[str]] = None):
    """Entry point"""
    parser = argparse.ArgumentParser(description='Replica Autoscaler')
    parser.add_argument(
        '--config',
        default=os.getenv('CONFIG_PATH', 'config/config.yaml'),
        help='Path to configuration file'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Run in dry-run mode (no actual scaling)'
    )
    parser.add_argument(
        '--simulate',
        action='store_true',
        help='Use simulated metrics and an in-memory replica pool'
    )
    parser.add_argument(
        '--log-level',
        default=None,
        help='Override the configured log level'
    )

    args = parser.parse_args(argv)

    settings = load_settings(args.config)
    setup_logging(
        level=args.log_level or settings.logging.level,
        log_file=settings.logging.file,
        enable_colors=settings.logging.enable_colors,
        console_format=settings.logging.format
    )
    main_logger = get_logger(__name__)

    try:
        service = AutoscalerService(settings, simulate=args.simulate, dry_run=args.dry_run)
    except InvalidPolicy as e:
        main_logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    try:
        asyncio.run(service.run())
    except KeyboardInterrupt:
        main_logger.info("Received keyboard interrupt")
    except Exception as e:
        main_logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
