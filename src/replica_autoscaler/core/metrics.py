#!/usr/bin/env python3
"""
Metrics sources for gathering per-replica utilization samples
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from ..exceptions import MetricsUnavailable
from ..models.scaling import MetricSample, ReplicaSet

logger = logging.getLogger(__name__)

# Per-pod usage as a percentage of the pod's resource requests
DEFAULT_QUERY_TEMPLATE = (
    'sum by (pod) (rate(container_cpu_usage_seconds_total{{namespace="{namespace}",'
    'pod=~"{name}-.*",container!=""}}[1m])) / sum by (pod) '
    '(kube_pod_container_resource_requests{{namespace="{namespace}",pod=~"{name}-.*",'
    'resource="{metric}"}}) * 100'
)


class MetricsSource(ABC):
    """
    Read-only supplier of utilization samples, one per active replica.

    ``sample`` never returns stale data: a collaborator failure or a call that
    outlives ``timeout`` raises MetricsUnavailable instead.
    """

    name = "metrics"

    def __init__(self, timeout: float = 5.0, metric_name: str = "cpu"):
        self.timeout = timeout
        self.metric_name = metric_name

    async def sample(self, replica_set: ReplicaSet) -> List[MetricSample]:
        """
        Collect samples for a replica set

        Args:
            replica_set: Workload to sample

        Returns:
            Samples ordered by replica id

        Raises:
            MetricsUnavailable: if the source failed or timed out
        """
        try:
            samples = await asyncio.wait_for(self._collect(replica_set), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise MetricsUnavailable(
                f"{self.name} did not answer within {self.timeout}s for {replica_set.key}",
                source=self.name
            )

        return sorted(samples, key=lambda s: (s.metric_name, s.replica_id))

    @abstractmethod
    async def _collect(self, replica_set: ReplicaSet) -> List[MetricSample]:
        """Fetch raw samples; implementations raise MetricsUnavailable on failure"""


class PrometheusMetricsSource(MetricsSource):
    """Collects per-pod utilization from the Prometheus HTTP API"""

    name = "prometheus"

    def __init__(
        self,
        url: str = "http://prometheus:9090",
        query_template: str = DEFAULT_QUERY_TEMPLATE,
        timeout: float = 5.0,
        metric_name: str = "cpu",
        session: Optional[requests.Session] = None
    ):
        """
        Initialize Prometheus metrics source

        Args:
            url: Prometheus base URL
            query_template: PromQL template, formatted with namespace, name and metric
            timeout: Seconds allowed per sample call
            metric_name: Resource the samples describe
            session: Optional requests session (a new one is created otherwise)
        """
        super().__init__(timeout=timeout, metric_name=metric_name)
        self.prometheus_url = url.rstrip("/")
        self.query_template = query_template
        self.session = session or requests.Session()

    def build_query(self, replica_set: ReplicaSet) -> str:
        return self.query_template.format(
            namespace=replica_set.namespace,
            name=replica_set.name,
            metric=self.metric_name
        )

    async def _collect(self, replica_set: ReplicaSet) -> List[MetricSample]:
        query = self.build_query(replica_set)
        loop = asyncio.get_running_loop()
        # requests is blocking; keep it off the event loop
        result = await loop.run_in_executor(None, self._query_prometheus, query)
        return self._parse_result(result)

    def _query_prometheus(self, query: str) -> List[Dict[str, Any]]:
        """Query Prometheus API"""
        try:
            response = self.session.get(
                f"{self.prometheus_url}/api/v1/query",
                params={'query': query},
                timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            raise MetricsUnavailable(f"Error querying Prometheus: {e}", source=self.name) from e
        except ValueError as e:
            raise MetricsUnavailable(f"Prometheus returned invalid JSON: {e}", source=self.name) from e

        if data.get('status') != 'success':
            raise MetricsUnavailable(
                f"Prometheus query failed: {data.get('error', 'Unknown error')}",
                source=self.name
            )

        try:
            return list(data['data']['result'])
        except (KeyError, TypeError) as e:
            raise MetricsUnavailable(f"Unexpected Prometheus payload: {e}", source=self.name) from e

    def _parse_result(self, result: List[Dict[str, Any]]) -> List[MetricSample]:
        samples = []
        for index, item in enumerate(result):
            try:
                timestamp, raw_value = item['value']
                value = float(raw_value)
            except (KeyError, TypeError, ValueError) as e:
                raise MetricsUnavailable(f"Malformed Prometheus series: {item!r}", source=self.name) from e

            pod = item.get('metric', {}).get('pod', f"replica-{index}")

            # Pods without requests divide by zero and come back as NaN
            if not math.isfinite(value):
                logger.debug(f"Dropping non-finite sample for {pod}: {raw_value}")
                continue

            samples.append(MetricSample(
                replica_id=pod,
                metric_name=self.metric_name,
                value=max(0.0, value),
                timestamp=datetime.fromtimestamp(float(timestamp), tz=timezone.utc)
            ))

        logger.debug(f"Prometheus returned {len(samples)} samples")
        return samples
