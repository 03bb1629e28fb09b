"""Operational telemetry for the dispatcher and the completion listener.

Metrics are written as ``<metric_name>: <value>`` log lines so that log-based
metric filters can extract them. When enabled, the same values are also
published to CloudWatch directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import boto3

LOGGER = logging.getLogger(__name__)


@dataclass
class CloudWatchMetricsEmitter:
    """Thin wrapper for publishing custom metrics to CloudWatch."""

    namespace: str
    region: Optional[str] = None
    textract_api: Optional[str] = None
    client: Optional[Any] = None

    def __post_init__(self) -> None:
        if self.client is None:
            self.client = boto3.client("cloudwatch", region_name=self.region)

    def emit(self, metric_name: str, value: float, unit: str = "Count") -> None:
        metric_data = [
            {
                "MetricName": metric_name,
                "Timestamp": datetime.now(timezone.utc),
                "Value": float(value),
                "Unit": unit,
                "Dimensions": self._dimensions(),
            }
        ]
        try:
            self.client.put_metric_data(Namespace=self.namespace, MetricData=metric_data)
        except Exception:  # pragma: no cover - telemetry should not break jobs
            LOGGER.exception("Failed to publish CloudWatch metric %s", metric_name)

    def _dimensions(self) -> List[Dict[str, Any]]:
        if self.textract_api:
            return [{"Name": "TextractAPI", "Value": self.textract_api}]
        return []


class OperationalTelemetry:
    """Writes the job lifecycle metrics for one Textract API flavour."""

    def __init__(self, textract_api: str, emitter: Optional[CloudWatchMetricsEmitter] = None) -> None:
        self._prefix = f"textract_async_{textract_api}"
        self._emitter = emitter

    def job_started(self, job_id: str) -> None:
        LOGGER.info("%s_job_started", self._prefix)
        LOGGER.debug("Started Textract job %s", job_id)
        self._emit("JobsStarted", 1)

    def pages_sent(self, pages: int) -> None:
        LOGGER.info("%s_number_of_pages_send_to_process: %s", self._prefix, pages)
        self._emit("NumberPagesSent", pages)

    def job_finished(self, duration_ms: Optional[int], pages: Optional[int]) -> None:
        if duration_ms is not None:
            LOGGER.info("%s_job_duration_in_ms: %s", self._prefix, duration_ms)
            self._emit("Duration", duration_ms, unit="Milliseconds")
        if pages is not None:
            LOGGER.info("%s_number_of_pages_processed: %s", self._prefix, pages)
            self._emit("NumberPages", pages)
        self._emit("JobsFinished", 1)

    def orphaned_job(self, job_id: str, reason: str) -> None:
        LOGGER.error("textract_async_orphaned_job: %s reason=%s", job_id, reason)
        self._emit("OrphanedJobs", 1)

    def unmatched_notification(self, job_id: str, status: str) -> None:
        LOGGER.warning("textract_async_unmatched_notification: %s status=%s", job_id, status)
        self._emit("UnmatchedNotifications", 1)

    def _emit(self, metric_name: str, value: float, unit: str = "Count") -> None:
        if self._emitter is not None:
            self._emitter.emit(metric_name, value, unit=unit)


__all__ = ["CloudWatchMetricsEmitter", "OperationalTelemetry"]
