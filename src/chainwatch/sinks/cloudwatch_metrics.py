"""
Periodic CloudWatch publisher for the pipeline's observability surface.

Every interval it collects queue depth, in-flight, dead-lettered, listener lag
and healthy endpoint counts and sends them with put_metric_data. CloudWatch
failures are logged as warnings but do not affect the pipeline.
"""

import asyncio
import logging
from typing import Any, Callable

import boto3

logger = logging.getLogger(__name__)

MetricCollector = Callable[[], list[dict[str, Any]]]


def metric(name: str, value: float, unit: str = "Count", **dimensions: str) -> dict[str, Any]:
    datum: dict[str, Any] = {"MetricName": name, "Value": float(value), "Unit": unit}
    if dimensions:
        datum["Dimensions"] = [{"Name": k, "Value": str(v)} for k, v in dimensions.items()]
    return datum


class MetricsPublisher:
    """
    Usage (PipelineManager):
        publisher = MetricsPublisher(manager.collect_metrics, "Chainwatch/Pipeline", "us-west-2", 60)
        await asyncio.gather(publisher.run(), ...)
        publisher.shutdown()
    """

    MAX_DATA_PER_CALL = 20

    def __init__(self, collect: MetricCollector, namespace: str, region: str, interval_seconds: float) -> None:
        self._collect = collect
        self._namespace = namespace
        self._interval = interval_seconds
        self._cw = boto3.client("cloudwatch", region_name=region)
        self._stop: asyncio.Event = asyncio.Event()

    async def run(self) -> None:
        loop = asyncio.get_event_loop()
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            await loop.run_in_executor(None, self.publish)

    def publish(self) -> None:
        try:
            data = self._collect()
        except Exception as exc:
            logger.warning("Metric collection failed (non-fatal): %s", exc)
            return
        for i in range(0, len(data), self.MAX_DATA_PER_CALL):
            try:
                self._cw.put_metric_data(Namespace=self._namespace, MetricData=data[i : i + self.MAX_DATA_PER_CALL])
            except Exception as exc:
                logger.warning("CloudWatch put_metric_data failed (non-fatal): %s", exc)

    def shutdown(self) -> None:
        self._stop.set()
