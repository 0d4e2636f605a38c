#!/usr/bin/env python3
"""
Replica controller: applies scaling decisions to a replica pool with
cooldown and anti-flapping rules
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional

from kubernetes import client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as TransportError

from ..exceptions import ApplyError
from ..models.scaling import (
    ApplyOutcome,
    ControllerState,
    ReplicaSet,
    ScalingDecision,
    ScalingPolicy,
    ScalingReason,
)

logger = logging.getLogger(__name__)

REVISION_ANNOTATION = "replica-autoscaler/revision"


class ReplicaPool(ABC):
    """The control-plane collaborator that actually runs replicas"""

    @abstractmethod
    async def get_replicas(self, replica_set: ReplicaSet) -> int:
        """Read the replica count the control plane currently reports"""

    @abstractmethod
    async def set_replicas(self, replica_set: ReplicaSet, replicas: int) -> int:
        """Idempotently set the replica count and return the confirmed value"""

    @abstractmethod
    async def replace(self, replica_set: ReplicaSet, revision: str) -> str:
        """Roll the workload over to a new revision and return the confirmed revision"""


class KubernetesReplicaPool(ReplicaPool):
    """Replica pool backed by the Kubernetes apps/v1 Deployment scale subresource"""

    def __init__(
        self,
        apps_api: Optional[client.AppsV1Api] = None,
        in_cluster: bool = False,
        kubeconfig_path: Optional[str] = None
    ):
        """
        Initialize Kubernetes replica pool

        Args:
            apps_api: Preconfigured AppsV1Api (config loading is skipped when given)
            in_cluster: Load the service account config instead of a kubeconfig
            kubeconfig_path: Path to a kubeconfig file (default location when None)
        """
        if apps_api is None:
            if in_cluster:
                logger.info("Loading in-cluster config")
                k8s_config.load_incluster_config()
            else:
                logger.info(f"Loading kubeconfig from: {kubeconfig_path or 'default location'}")
                k8s_config.load_kube_config(config_file=kubeconfig_path)
            apps_api = client.AppsV1Api()
            logger.info("Kubernetes client initialized successfully")

        self.apps_api = apps_api

    async def _run(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: func(*args, **kwargs))

    async def get_replicas(self, replica_set: ReplicaSet) -> int:
        scale = await self._run(
            self.apps_api.read_namespaced_deployment_scale,
            replica_set.name,
            replica_set.namespace
        )
        return int(scale.spec.replicas or 0)

    async def set_replicas(self, replica_set: ReplicaSet, replicas: int) -> int:
        body = {"spec": {"replicas": replicas}}
        await self._run(
            self.apps_api.patch_namespaced_deployment_scale,
            replica_set.name,
            replica_set.namespace,
            body
        )
        return await self.get_replicas(replica_set)

    async def replace(self, replica_set: ReplicaSet, revision: str) -> str:
        # Changing the pod template makes the Deployment roll pods over
        body = {
            "spec": {
                "template": {
                    "metadata": {"annotations": {REVISION_ANNOTATION: revision}}
                }
            }
        }
        await self._run(
            self.apps_api.patch_namespaced_deployment,
            replica_set.name,
            replica_set.namespace,
            body
        )
        deployment = await self._run(
            self.apps_api.read_namespaced_deployment,
            replica_set.name,
            replica_set.namespace
        )
        annotations = deployment.spec.template.metadata.annotations or {}
        return annotations.get(REVISION_ANNOTATION, "")


class ReplicaController:
    """
    Applies decisions to one replica set.

    States:
    - STABLE: decisions apply as computed
    - SCALING: a pool update is in flight
    - COOLDOWN: entered after every successful update and held for the
      policy's stabilization window. Scale-downs are suppressed; scale-ups are
      suppressed unless the decision's average utilization reaches the
      emergency threshold.

    A failed pool update leaves both the replica set and the controller state
    as they were and raises ApplyError.
    """

    def __init__(
        self,
        pool: ReplicaPool,
        policy: ScalingPolicy,
        clock: Callable[[], float] = time.monotonic,
        apply_timeout: float = 10.0,
        max_attempts: int = 3,
        backoff_initial: float = 0.5,
        backoff_factor: float = 2.0,
        dry_run: bool = False
    ):
        """
        Initialize replica controller

        Args:
            pool: Replica pool collaborator
            policy: Scaling policy (stabilization window, emergency threshold)
            clock: Monotonic clock in seconds
            apply_timeout: Seconds allowed per pool call attempt
            max_attempts: Attempts per apply before ApplyError is raised
            backoff_initial: Delay before the first retry
            backoff_factor: Multiplier applied to the delay after each retry
            dry_run: Log intended changes without touching the pool
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self.pool = pool
        self.policy = policy
        self.clock = clock
        self.apply_timeout = apply_timeout
        self.max_attempts = max_attempts
        self.backoff_initial = backoff_initial
        self.backoff_factor = backoff_factor
        self.dry_run = dry_run

        self._state = ControllerState.STABLE
        self._cooldown_started: Optional[float] = None
        self.last_outcome: Optional[ApplyOutcome] = None

        self.applied_count = 0
        self.suppressed_count = 0
        self.failed_count = 0

    @property
    def state(self) -> ControllerState:
        self._refresh_state()
        return self._state

    def cooldown_remaining(self) -> float:
        """Seconds left in the current cooldown, 0 when not cooling down"""
        if self.state != ControllerState.COOLDOWN:
            return 0.0
        elapsed = self.clock() - self._cooldown_started
        return max(0.0, self.policy.stabilization_window - elapsed)

    def _refresh_state(self) -> None:
        if self._state == ControllerState.COOLDOWN and self._cooldown_started is not None:
            if self.clock() - self._cooldown_started >= self.policy.stabilization_window:
                logger.info("Stabilization window elapsed, controller back to Stable")
                self._state = ControllerState.STABLE
                self._cooldown_started = None

    def _enter_cooldown(self) -> None:
        self._state = ControllerState.COOLDOWN
        self._cooldown_started = self.clock()

    def _is_emergency(self, decision: ScalingDecision) -> bool:
        threshold = self.policy.emergency_scale_up_threshold
        if threshold is None or decision.average_utilization is None:
            return False
        return decision.average_utilization >= threshold

    async def apply(self, replica_set: ReplicaSet, decision: ScalingDecision, force: bool = False) -> ReplicaSet:
        """
        Apply a decision to the replica set

        Args:
            replica_set: Current replica set
            decision: Decision to apply
            force: Bypass cooldown suppression (operator overrides)

        Returns:
            The updated replica set, or the same one when nothing changed

        Raises:
            ApplyError: if the pool could not be updated
        """
        state = self.state
        desired = max(replica_set.min_replicas, min(replica_set.max_replicas, decision.desired_replicas))

        if not decision.is_change or desired == replica_set.current_replicas:
            self.last_outcome = ApplyOutcome.NO_CHANGE
            return replica_set

        if state == ControllerState.SCALING:
            raise ApplyError(
                f"Scaling operation already in flight for {replica_set.key}",
                replica_set=replica_set.key
            )

        if state == ControllerState.COOLDOWN and not force:
            if decision.reason == ScalingReason.SCALE_DOWN or not self._is_emergency(decision):
                self.suppressed_count += 1
                self.last_outcome = ApplyOutcome.SUPPRESSED
                logger.info(
                    f"{decision.reason.value} to {desired} suppressed for {replica_set.key}: "
                    f"cooldown active, {self.cooldown_remaining():.0f}s remaining"
                )
                return replica_set
            logger.warning(
                f"Emergency scale-up for {replica_set.key} during cooldown: "
                f"utilization {decision.average_utilization:.1f}% >= "
                f"{self.policy.emergency_scale_up_threshold:.1f}%"
            )

        if self.dry_run:
            self.last_outcome = ApplyOutcome.DRY_RUN
            logger.info(
                f"Dry-run mode: would scale {replica_set.key} "
                f"{replica_set.current_replicas} -> {desired}"
            )
            return replica_set

        logger.info(
            f"Scaling {replica_set.key} {replica_set.current_replicas} -> {desired} "
            f"({decision.reason.value}: {decision.message})"
        )

        confirmed = await self._transition(
            replica_set,
            f"scale to {desired}",
            lambda: self.pool.set_replicas(replica_set, desired),
            expected=desired
        )

        self.applied_count += 1
        self.last_outcome = ApplyOutcome.APPLIED
        logger.info(f"Scaled {replica_set.key} to {confirmed} replicas, cooldown started")
        return replica_set.model_copy(update={"current_replicas": confirmed})

    async def replace(self, replica_set: ReplicaSet, revision: str) -> ReplicaSet:
        """
        Roll the replica set over to a new revision

        The rollout follows the same discipline as a scale: refused while
        another operation is in flight, all-or-nothing on failure, and
        followed by a cooldown.
        """
        if self.state == ControllerState.SCALING:
            raise ApplyError(
                f"Cannot roll out {replica_set.key} while scaling is in flight",
                replica_set=replica_set.key
            )

        if revision == replica_set.revision:
            self.last_outcome = ApplyOutcome.NO_CHANGE
            return replica_set

        if self.dry_run:
            self.last_outcome = ApplyOutcome.DRY_RUN
            logger.info(f"Dry-run mode: would roll out {replica_set.key} to revision {revision}")
            return replica_set

        logger.info(f"Rolling out {replica_set.key}: {replica_set.revision} -> {revision}")
        confirmed = await self._transition(
            replica_set,
            f"roll out revision {revision}",
            lambda: self.pool.replace(replica_set, revision),
            expected=revision
        )

        self.applied_count += 1
        self.last_outcome = ApplyOutcome.REPLACED
        return replica_set.model_copy(update={"revision": confirmed})

    async def _transition(
        self,
        replica_set: ReplicaSet,
        operation: str,
        call: Callable[[], Awaitable[Any]],
        expected: Any
    ) -> Any:
        """Run a pool call under SCALING, then enter COOLDOWN or roll back"""
        previous_state = self._state
        previous_cooldown = self._cooldown_started
        self._state = ControllerState.SCALING

        try:
            confirmed = await self._call_with_retry(replica_set, operation, call, expected)
        except BaseException:
            self._state = previous_state
            self._cooldown_started = previous_cooldown
            raise

        self._enter_cooldown()
        return confirmed

    async def _call_with_retry(
        self,
        replica_set: ReplicaSet,
        operation: str,
        call: Callable[[], Awaitable[Any]],
        expected: Any
    ) -> Any:
        delay = self.backoff_initial
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                confirmed = await asyncio.wait_for(call(), timeout=self.apply_timeout)
                if confirmed != expected:
                    raise ApplyError(
                        f"control plane confirmed {confirmed!r}, expected {expected!r}",
                        replica_set=replica_set.key
                    )
                return confirmed
            except asyncio.TimeoutError:
                last_error = TimeoutError(f"timed out after {self.apply_timeout}s")
            except ApiException as e:
                last_error = e
            except TransportError as e:
                # Unreachable API server: MaxRetryError, ProtocolError
                last_error = e
            except ApplyError as e:
                last_error = e
            except (ConnectionError, OSError, RuntimeError) as e:
                last_error = e

            logger.warning(
                f"Attempt {attempt}/{self.max_attempts} to {operation} for "
                f"{replica_set.key} failed: {last_error}"
            )
            if attempt < self.max_attempts:
                await asyncio.sleep(delay)
                delay *= self.backoff_factor

        self.failed_count += 1
        raise ApplyError(
            f"Failed to {operation} for {replica_set.key} after {self.max_attempts} attempts: {last_error}",
            replica_set=replica_set.key,
            attempts=self.max_attempts
        )

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "cooldown_remaining": round(self.cooldown_remaining(), 3),
            "dry_run": self.dry_run,
            "last_outcome": self.last_outcome.value if self.last_outcome else None,
            "applied": self.applied_count,
            "suppressed": self.suppressed_count,
            "failed": self.failed_count,
        }
