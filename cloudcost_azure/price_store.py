"""Retail price lookup for the virtual machines of AKS clusters."""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass

from .client import AzureClient, ResourceSku, RetailPricesListOptions
from .machines import MachineOperatingSystem, MachinePriority, VirtualMachineInfo

logger = logging.getLogger(__name__)

AZ_API_VERSION = "2023-01-01-preview"
AZURE_PRICE_SEARCH_FILTER = "serviceName eq 'Virtual Machines' and priceType eq 'Consumption'"
AZURE_METER_REGION = "'primary'"
DEFAULT_INSTANCE_FAMILY = "General purpose"

MIBS_TO_GIB = 1024
PRICE_REFRESH_INTERVAL = 24 * 60 * 60.0  # seconds
LIST_PRICES_MAX_RETRIES = 5

DEFAULT_LIST_OPTIONS = RetailPricesListOptions(
    api_version=AZ_API_VERSION,
    filter=AZURE_PRICE_SEARCH_FILTER,
    meter_region=AZURE_METER_REGION,
)

# Share of an instance's price attributed to CPU, by machine family. An
# approximation taken from observed spend; the remainder goes to memory.
CPU_TO_COST_RATIO: dict[str, float] = {
    "Compute optimized": 0.88,
    "Memory optimized": 0.48,
    "General purpose": 0.65,
    "Storage optimized": 0.48,
}


class PriceInformationNotFoundError(LookupError):
    """No price is known for the machine."""

    def __init__(self, message: str = "price information not found in map") -> None:
        super().__init__(message)


class MaxRetriesReachedError(Exception):
    """Listing prices kept failing until the retry limit was hit."""


@dataclass
class MachinePrices:
    """Hourly price split into a per-core and a per-GiB part."""

    price_per_core: float = 0.0
    price_per_gib: float = 0.0


@dataclass
class MachineSku:
    """Hourly retail price of one machine size, with its breakdown once computed."""

    retail_price: float = 0.0
    machine_prices_breakdown: MachinePrices | None = None


PriceBySku = dict[str, MachineSku]
PriceByOperatingSystem = dict[MachineOperatingSystem, PriceBySku]
PriceByPriority = dict[MachinePriority, PriceByOperatingSystem]


def _divide(numerator: float, denominator: float) -> float:
    """Floating division that yields inf or nan on a zero denominator instead of raising."""
    if denominator == 0:
        if numerator == 0 or math.isnan(numerator):
            return math.nan
        return math.copysign(math.inf, numerator) * math.copysign(1.0, denominator)
    return numerator / denominator


def machine_operating_system_from_sku(sku: ResourceSku) -> MachineOperatingSystem:
    """Windows if the product name says so, Linux otherwise."""
    if "Windows" in sku.product_name:
        return MachineOperatingSystem.WINDOWS
    return MachineOperatingSystem.LINUX


def machine_priority_from_sku(sku: ResourceSku) -> MachinePriority:
    """Spot if the SKU name says so, on-demand otherwise."""
    if "Spot" in sku.sku_name:
        return MachinePriority.SPOT
    return MachinePriority.ON_DEMAND


class PriceStore:
    """Prices of virtual machines by region, priority, operating system and size."""

    def __init__(self, client: AzureClient, region_map: dict[str, PriceByPriority] | None = None) -> None:
        self._client = client
        self._lock = threading.Lock()
        self.region_map: dict[str, PriceByPriority] = region_map if region_map is not None else {}

    def get_price_breakdown(self, vm_info: VirtualMachineInfo, price: float) -> MachinePrices:
        """Split an hourly price into per-core and per-GiB parts by the family's CPU ratio."""
        ratio = CPU_TO_COST_RATIO.get(vm_info.machine_family)
        if ratio is None:
            logger.info(
                "no ratio found for instance type, using default",
                extra={"instanceType": vm_info.machine_type_sku, "instanceFamily": vm_info.machine_family},
            )
            ratio = CPU_TO_COST_RATIO[DEFAULT_INSTANCE_FAMILY]
        return MachinePrices(
            price_per_core=_divide(price * ratio, float(vm_info.num_of_cores)),
            price_per_gib=_divide(price * (1 - ratio), float(vm_info.memory_in_mib)) * MIBS_TO_GIB,
        )

    def get_price_info_from_vm_info(self, vm_info: VirtualMachineInfo | None) -> MachineSku:
        """The price of the machine; its breakdown is computed on first lookup."""
        with self._lock:
            if vm_info is None:
                logger.error("nil vm info passed into price map")
                raise PriceInformationNotFoundError()

            region = vm_info.region
            sku = vm_info.machine_type_sku
            if not region or not sku:
                logger.error("region or sku not defined: region=%r sku=%r vmInfo=%r", region, sku, vm_info)
                raise PriceInformationNotFoundError()

            priority_map = self.region_map.get(region)
            if priority_map is None:
                logger.error("region not found in price map: %s", region)
                raise PriceInformationNotFoundError()

            os_map = priority_map.get(vm_info.priority)
            if os_map is None:
                logger.error("priority not found in region map: region=%s priority=%s", region, vm_info.priority)
                raise PriceInformationNotFoundError()

            sku_map = os_map.get(vm_info.operating_system)
            if sku_map is None:
                logger.error("os map not found in priority map: os=%s", vm_info.operating_system)
                raise PriceInformationNotFoundError()

            machine_sku = sku_map.get(sku)
            if machine_sku is None:
                logger.error("sku info not found in os map: sku=%s", sku)
                raise PriceInformationNotFoundError()

            if machine_sku.machine_prices_breakdown is None:
                machine_sku.machine_prices_breakdown = self.get_price_breakdown(
                    vm_info, float(machine_sku.retail_price)
                )
            return machine_sku

    def is_relevant_price(self, sku: ResourceSku) -> bool:
        """True for virtual machine prices that are not low priority.

        Filtering here is much faster in practice than filtering in the query.
        """
        if not sku.product_name or "Virtual Machines" not in sku.product_name:
            logger.debug("product is not a virtual machine: %s", sku.sku_name)
            return False
        if not sku.sku_name or "Low Priority" in sku.sku_name:
            logger.debug("disregarding low priority machines: %s", sku.sku_name)
            return False
        return True

    def _list_prices_with_retries(self, options: RetailPricesListOptions) -> list[ResourceSku]:
        last_error: Exception | None = None
        for attempt in range(1, LIST_PRICES_MAX_RETRIES + 1):
            try:
                return self._client.list_prices(options)
            except Exception as exc:
                last_error = exc
                logger.debug("listing prices failed on attempt %d: %s", attempt, exc)
        raise MaxRetriesReachedError(f"max retries reached: {last_error}") from last_error

    def populate_price_store(self) -> None:
        """Fetch the price list and replace the stored prices; on failure the old prices stay."""
        start = time.monotonic()
        logger.info("populating price store")

        try:
            prices = self._list_prices_with_retries(DEFAULT_LIST_OPTIONS)
        except MaxRetriesReachedError as exc:
            logger.error("error populating prices: %s", exc)
            return

        logger.debug("found prices: %d", len(prices))

        region_map: dict[str, PriceByPriority] = {}
        for price in prices:
            region_name = price.arm_region_name
            if not region_name:
                logger.debug("region name for price not found: %s", price.sku_name)
                continue
            if not self.is_relevant_price(price):
                continue

            if region_name not in region_map:
                logger.debug("populating machine prices for region %s", region_name)
                region_map[region_name] = {MachinePriority.SPOT: {}, MachinePriority.ON_DEMAND: {}}

            os_map = region_map[region_name][machine_priority_from_sku(price)]
            sku_map = os_map.setdefault(machine_operating_system_from_sku(price), {})
            sku_map[price.arm_sku_name] = MachineSku(retail_price=price.retail_price)

        with self._lock:
            self.region_map.clear()
            self.region_map.update(region_map)

        logger.info("price store populated in %.3fs", time.monotonic() - start)