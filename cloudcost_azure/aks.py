"""Prometheus collector for the hourly cost of the virtual machines in AKS clusters."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator

from .client import AzureClient
from .machine_store import MACHINE_REFRESH_INTERVAL, MachineStore
from .metrics import (
    INSTANCE_CPU_COST_SUFFIX,
    INSTANCE_MEMORY_COST_SUFFIX,
    INSTANCE_TOTAL_COST_SUFFIX,
    METRIC_PREFIX,
    Desc,
    Metric,
    Registry,
    ValueType,
    generate_desc,
)
from .price_store import PRICE_REFRESH_INTERVAL, MachineSku, PriceInformationNotFoundError, PriceStore

logger = logging.getLogger(__name__)

SUBSYSTEM = "azure_aks"

_INSTANCE_LABELS = (
    "instance",
    "region",
    "machine_type",
    "family",
    "cluster_name",
    "price_tier",
    "operating_system",
)

INSTANCE_CPU_HOURLY_COST_DESC = generate_desc(
    METRIC_PREFIX,
    SUBSYSTEM,
    INSTANCE_CPU_COST_SUFFIX,
    "The cpu cost a a compute instance in USD/(core*h)",
    _INSTANCE_LABELS,
)
INSTANCE_MEMORY_HOURLY_COST_DESC = generate_desc(
    METRIC_PREFIX,
    SUBSYSTEM,
    INSTANCE_MEMORY_COST_SUFFIX,
    "The memory cost of a compute instance in USD/(GiB*h)",
    _INSTANCE_LABELS,
)
INSTANCE_TOTAL_HOURLY_COST_DESC = generate_desc(
    METRIC_PREFIX,
    SUBSYSTEM,
    INSTANCE_TOTAL_COST_SUFFIX,
    "The total cost of a compute instance in USD/h",
    _INSTANCE_LABELS,
)


class VmPriceRetrievalError(PriceInformationNotFoundError):
    """The price of a known machine could not be retrieved."""

    def __init__(self, message: str = "failed to retrieve price info for VM") -> None:
        super().__init__(message)


class AksCollector:
    """Reports per-core, per-GiB and total hourly prices of every AKS machine in a subscription."""

    name = SUBSYSTEM

    def __init__(
        self,
        client: AzureClient | None = None,
        *,
        machine_store: MachineStore | None = None,
        price_store: PriceStore | None = None,
        price_refresh_interval: float = PRICE_REFRESH_INTERVAL,
        machine_refresh_interval: float = MACHINE_REFRESH_INTERVAL,
    ) -> None:
        if client is None and (machine_store is None or price_store is None):
            raise ValueError("a client is required unless both stores are given")
        self.machine_store = machine_store if machine_store is not None else MachineStore(client)
        self.price_store = price_store if price_store is not None else PriceStore(client)
        self._price_refresh_interval = price_refresh_interval
        self._machine_refresh_interval = machine_refresh_interval
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        """Populate both stores in the background now, then refresh them periodically."""
        if self._threads:
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(
                target=self._refresh_loop,
                args=(self.price_store.populate_price_store, self._price_refresh_interval),
                name="aks-price-refresh",
                daemon=True,
            ),
            threading.Thread(
                target=self._refresh_loop,
                args=(self.machine_store.populate_machine_store, self._machine_refresh_interval),
                name="aks-machine-refresh",
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()

    def stop(self) -> None:
        """Stop the background refreshes and wait for them to finish."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join()
        self._threads = []

    def _refresh_loop(self, populate: Callable[[], None], interval: float) -> None:
        while True:
            try:
                populate()
            except Exception:
                logger.exception("error refreshing store")
            if self._stop_event.wait(interval):
                return

    def get_machine_prices(self, vm_id: str) -> MachineSku:
        """The price of the machine with this id."""
        vm_info = self.machine_store.get_vm_info_by_vm_id(vm_id)
        try:
            return self.price_store.get_price_info_from_vm_info(vm_info)
        except Exception as exc:
            raise VmPriceRetrievalError(f"{exc}: failed to retrieve price info for VM") from exc

    def collect(self) -> Iterator[Metric]:
        """Yield the cost metrics of every stored machine; a missing price stops the collection."""
        logger.info("collecting metrics")
        start = time.monotonic()

        for vm_info in self.machine_store.get_list_of_vms_for_subscription():
            price = self.get_machine_prices(vm_info.id)
            label_values = (
                vm_info.name,
                vm_info.region,
                vm_info.machine_type_sku,
                vm_info.machine_family,
                vm_info.owning_cluster,
                str(vm_info.priority),
                str(vm_info.operating_system),
            )
            breakdown = price.machine_prices_breakdown
            yield Metric(INSTANCE_CPU_HOURLY_COST_DESC, ValueType.GAUGE, breakdown.price_per_core, label_values)
            yield Metric(INSTANCE_MEMORY_HOURLY_COST_DESC, ValueType.GAUGE, breakdown.price_per_gib, label_values)
            yield Metric(INSTANCE_TOTAL_HOURLY_COST_DESC, ValueType.GAUGE, price.retail_price, label_values)

        logger.info("metrics collected in %.3fs", time.monotonic() - start)

    def collect_metrics(self) -> float:
        """Deprecated no-op kept for collectors that still call it."""
        return 0.0

    def describe(self) -> list[Desc]:
        """The descriptors of the metrics this collector reports."""
        return [INSTANCE_CPU_HOURLY_COST_DESC, INSTANCE_MEMORY_HOURLY_COST_DESC, INSTANCE_TOTAL_HOURLY_COST_DESC]

    def register(self, registry: Registry) -> None:
        """Nothing to register; the metrics are constant samples."""
        logger.info("registering collector %s", self.name)