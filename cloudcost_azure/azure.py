"""The Azure provider: runs its service collectors and reports scrape health."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from .aks import AksCollector
from .client import AzClientWrapper, AzureClient
from .metrics import EXPORTER_NAME, CounterVec, Desc, Metric, Registry, ValueType, build_fq_name

logger = logging.getLogger(__name__)

SUBSYSTEM = "azure"

COLLECTOR_DURATION_DESC = Desc(
    build_fq_name(EXPORTER_NAME, "collector", "last_scrape_duration_seconds"),
    "Duration of the last scrape in seconds.",
    ("provider", "collector"),
)
COLLECTOR_LAST_SCRAPE_ERROR_DESC = Desc(
    build_fq_name(EXPORTER_NAME, "collector", "last_scrape_error"),
    "Was the last scrape an error. 1 indicates an error.",
    ("provider", "collector"),
)
COLLECTOR_LAST_SCRAPE_TIME_DESC = Desc(
    build_fq_name(EXPORTER_NAME, "collector", "last_scrape_time"),
    "Time of the last scrape.",
    ("provider", "collector"),
)
COLLECTOR_SUCCESS_DESC = Desc(
    build_fq_name(EXPORTER_NAME, SUBSYSTEM, "collector_success"),
    "Was the last scrape of the Azure metrics successful.",
    ("collector",),
)
PROVIDER_LAST_SCRAPE_DURATION_DESC = Desc(
    build_fq_name(EXPORTER_NAME, "", "last_scrape_duration_seconds"),
    "Duration of the last scrape in seconds.",
    ("provider",),
)
PROVIDER_LAST_SCRAPE_ERROR_DESC = Desc(
    build_fq_name(EXPORTER_NAME, "", "last_scrape_error"),
    "Was the last scrape an error. 1 indicates an error.",
    ("provider",),
)
PROVIDER_LAST_SCRAPE_TIME_DESC = Desc(
    build_fq_name(EXPORTER_NAME, "", "last_scrape_time"),
    "Time of the last scrape.",
    ("provider",),
)


class InvalidSubscriptionIdError(ValueError):
    """The subscription id is missing or invalid."""

    def __init__(self, message: str = "subscription id was invalid") -> None:
        super().__init__(message)


@runtime_checkable
class Collector(Protocol):
    """A service collector run by the provider."""

    name: str

    def register(self, registry: Registry) -> None: ...

    def describe(self) -> Iterable[Desc]: ...

    def collect(self) -> Iterable[Metric]: ...


@dataclass
class Config:
    """Settings for the Azure provider."""

    subscription_id: str = ""
    collector_timeout: float = 0.0
    services: list[str] = field(default_factory=list)
    token_provider: Callable[[], str] | None = None


class AzureProvider:
    """Runs the configured collectors and adds scrape duration, error and time gauges."""

    def __init__(self, collectors: Iterable[Collector] = (), collector_timeout: float = 0.0) -> None:
        self.collectors: list[Collector] = list(collectors)
        self.collector_timeout = collector_timeout
        self.collector_scrapes_total = CounterVec(
            build_fq_name(EXPORTER_NAME, "collector", "scrapes_total"),
            "Total number of scrapes for a collector.",
            ("provider", "collector"),
        )
        self.provider_scrapes_total = CounterVec(
            build_fq_name(EXPORTER_NAME, "", "scrapes_total"),
            "Total number of scrapes.",
            ("provider",),
        )

    def register_collectors(self, registry: Registry) -> None:
        """Register the scrape counter and every collector; the first failure is raised."""
        logger.info("registering %d collectors", len(self.collectors))
        registry.must_register(self.collector_scrapes_total)
        for collector in self.collectors:
            collector.register(registry)

    def describe(self) -> list[Desc]:
        """The provider's descriptors followed by those of each collector that can describe itself."""
        descs = [
            COLLECTOR_LAST_SCRAPE_ERROR_DESC,
            COLLECTOR_DURATION_DESC,
            PROVIDER_LAST_SCRAPE_ERROR_DESC,
            PROVIDER_LAST_SCRAPE_DURATION_DESC,
            COLLECTOR_LAST_SCRAPE_TIME_DESC,
            PROVIDER_LAST_SCRAPE_TIME_DESC,
            COLLECTOR_SUCCESS_DESC,
        ]
        for collector in self.collectors:
            try:
                descs.extend(collector.describe())
            except Exception as exc:
                logger.info("error describing collector %s: %s", collector.name, exc)
        return descs

    def _collect_one(self, collector: Collector) -> list[Metric]:
        start = time.monotonic()
        metrics: list[Metric] = []
        errors = 0.0
        try:
            for metric in collector.collect():
                metrics.append(metric)
        except Exception as exc:
            errors = 1.0
            logger.info("error collecting metrics from collector %s: %s", collector.name, exc)

        labels = (SUBSYSTEM, collector.name)
        metrics.append(Metric(COLLECTOR_LAST_SCRAPE_ERROR_DESC, ValueType.GAUGE, errors, labels))
        metrics.append(Metric(COLLECTOR_DURATION_DESC, ValueType.GAUGE, time.monotonic() - start, labels))
        metrics.append(Metric(COLLECTOR_LAST_SCRAPE_TIME_DESC, ValueType.GAUGE, float(int(time.time())), labels))
        metrics.append(Metric(COLLECTOR_SUCCESS_DESC, ValueType.GAUGE, errors, (collector.name,)))
        self.collector_scrapes_total.with_label_values(SUBSYSTEM, collector.name).inc()
        return metrics

    def collect(self) -> list[Metric]:
        """Run every collector concurrently and return their metrics with the scrape gauges."""
        start = time.monotonic()
        metrics: list[Metric] = []
        if self.collectors:
            with ThreadPoolExecutor(max_workers=len(self.collectors)) as pool:
                for batch in pool.map(self._collect_one, self.collectors):
                    metrics.extend(batch)

        labels = (SUBSYSTEM,)
        metrics.append(Metric(PROVIDER_LAST_SCRAPE_ERROR_DESC, ValueType.GAUGE, 0.0, labels))
        metrics.append(Metric(PROVIDER_LAST_SCRAPE_DURATION_DESC, ValueType.GAUGE, time.monotonic() - start, labels))
        metrics.append(Metric(PROVIDER_LAST_SCRAPE_TIME_DESC, ValueType.GAUGE, float(int(time.time())), labels))
        self.provider_scrapes_total.with_label_values(SUBSYSTEM).inc()
        return metrics


def create_provider(config: Config, client: AzureClient | None = None) -> AzureProvider:
    """Build the provider and start a collector for each known service in the configuration."""
    if not config.subscription_id:
        logger.error("subscription id was invalid")
        raise InvalidSubscriptionIdError()

    if client is None:
        client = AzClientWrapper(config.subscription_id, config.token_provider)

    collectors: list[Collector] = []
    for service in config.services:
        if service.upper() == "AKS":
            collector = AksCollector(client)
            collector.start()
            collectors.append(collector)
        else:
            logger.info("unknown service %s", service)

    return AzureProvider(collectors, collector_timeout=config.collector_timeout)