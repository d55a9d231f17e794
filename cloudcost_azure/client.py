"""Azure API client: resource models and a paging REST client for the calls the exporter needs."""

from __future__ import annotations

import json
import logging
import urllib.parse
import urllib.request
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

MANAGEMENT_ENDPOINT = "https://management.azure.com"
RETAIL_PRICES_ENDPOINT = "https://prices.azure.com/api/retail/prices"
COMPUTE_API_VERSION = "2023-03-01"
CONTAINER_SERVICE_API_VERSION = "2023-10-01"

VIRTUAL_MACHINE_PRIORITY_SPOT = "Spot"

HttpGet = Callable[[str, Mapping[str, str]], Mapping[str, Any]]
TokenProvider = Callable[[], str]

_T = TypeVar("_T")


class AzureClientError(Exception):
    """Base error for Azure client failures."""


class ClientCreationError(AzureClientError):
    """The client could not be created."""


class PageAdvanceError(AzureClientError):
    """A page of results could not be fetched."""


def _sub(cls: Any, data: Mapping[str, Any], key: str) -> Any:
    value = data.get(key)
    return cls.from_dict(value) if value is not None else None


@dataclass
class ManagedClusterProperties:
    node_resource_group: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ManagedClusterProperties:
        return cls(node_resource_group=data.get("nodeResourceGroup"))


@dataclass
class ManagedCluster:
    name: str | None = None
    location: str | None = None
    properties: ManagedClusterProperties | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ManagedCluster:
        return cls(
            name=data.get("name"),
            location=data.get("location"),
            properties=_sub(ManagedClusterProperties, data, "properties"),
        )


@dataclass
class LinuxConfiguration:
    provision_vm_agent: bool | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LinuxConfiguration:
        return cls(provision_vm_agent=data.get("provisionVMAgent"))


@dataclass
class OSProfile:
    computer_name_prefix: str | None = None
    linux_configuration: LinuxConfiguration | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> OSProfile:
        return cls(
            computer_name_prefix=data.get("computerNamePrefix"),
            linux_configuration=_sub(LinuxConfiguration, data, "linuxConfiguration"),
        )


@dataclass
class VirtualMachineProfile:
    priority: str | None = None
    os_profile: OSProfile | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VirtualMachineProfile:
        return cls(priority=data.get("priority"), os_profile=_sub(OSProfile, data, "osProfile"))


@dataclass
class VirtualMachineScaleSetProperties:
    virtual_machine_profile: VirtualMachineProfile | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VirtualMachineScaleSetProperties:
        return cls(virtual_machine_profile=_sub(VirtualMachineProfile, data, "virtualMachineProfile"))


@dataclass
class VirtualMachineScaleSet:
    name: str | None = None
    location: str | None = None
    properties: VirtualMachineScaleSetProperties | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VirtualMachineScaleSet:
        return cls(
            name=data.get("name"),
            location=data.get("location"),
            properties=_sub(VirtualMachineScaleSetProperties, data, "properties"),
        )


@dataclass
class InstanceView:
    computer_name: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> InstanceView:
        return cls(computer_name=data.get("computerName"))


@dataclass
class VirtualMachineScaleSetVMProperties:
    instance_view: InstanceView | None = None
    vm_id: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VirtualMachineScaleSetVMProperties:
        return cls(instance_view=_sub(InstanceView, data, "instanceView"), vm_id=data.get("vmId"))


@dataclass
class Sku:
    name: str | None = None
    tier: str | None = None
    capacity: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Sku:
        return cls(name=data.get("name"), tier=data.get("tier"), capacity=data.get("capacity"))


@dataclass
class VirtualMachineScaleSetVM:
    name: str | None = None
    location: str | None = None
    properties: VirtualMachineScaleSetVMProperties | None = None
    sku: Sku | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VirtualMachineScaleSetVM:
        return cls(
            name=data.get("name"),
            location=data.get("location"),
            properties=_sub(VirtualMachineScaleSetVMProperties, data, "properties"),
            sku=_sub(Sku, data, "sku"),
        )


@dataclass
class VirtualMachineSize:
    name: str | None = None
    number_of_cores: int | None = None
    memory_in_mb: int | None = None
    os_disk_size_in_mb: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VirtualMachineSize:
        return cls(
            name=data.get("name"),
            number_of_cores=data.get("numberOfCores"),
            memory_in_mb=data.get("memoryInMB"),
            os_disk_size_in_mb=data.get("osDiskSizeInMB"),
        )


@dataclass
class ResourceSku:
    """One entry of the retail price list."""

    arm_sku_name: str = ""
    sku_name: str = ""
    arm_region_name: str = ""
    product_name: str = ""
    retail_price: float = 0.0
    unit_price: float = 0.0
    currency_code: str = ""
    location: str = ""
    meter_name: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ResourceSku:
        return cls(
            arm_sku_name=data.get("armSkuName", ""),
            sku_name=data.get("skuName", ""),
            arm_region_name=data.get("armRegionName", ""),
            product_name=data.get("productName", ""),
            retail_price=float(data.get("retailPrice", 0.0)),
            unit_price=float(data.get("unitPrice", 0.0)),
            currency_code=data.get("currencyCode", ""),
            location=data.get("location", ""),
            meter_name=data.get("meterName", ""),
        )


@dataclass(frozen=True)
class RetailPricesListOptions:
    """Query options for the retail price list."""

    api_version: str | None = None
    filter: str | None = None
    meter_region: str | None = None

    def query(self) -> dict[str, str]:
        """The options as query parameters, leaving out unset ones."""
        params = {"api-version": self.api_version, "$filter": self.filter, "meterRegion": self.meter_region}
        return {k: v for k, v in params.items() if v is not None}


class AzureClient(ABC):
    """The Azure calls the machine and price stores depend on."""

    @abstractmethod
    def list_clusters_in_subscription(self) -> list[ManagedCluster]:
        ...

    @abstractmethod
    def list_virtual_machine_scale_sets_owned_vms(self, rg_name: str, vmss_name: str) -> list[VirtualMachineScaleSetVM]:
        ...

    @abstractmethod
    def list_virtual_machine_scale_sets_from_resource_group(self, rg_name: str) -> list[VirtualMachineScaleSet]:
        ...

    @abstractmethod
    def list_machine_types_by_location(self, location: str) -> list[VirtualMachineSize]:
        ...

    @abstractmethod
    def list_prices(self, options: RetailPricesListOptions) -> list[ResourceSku]:
        ...


def _urllib_get(url: str, headers: Mapping[str, str]) -> Mapping[str, Any]:
    request = urllib.request.Request(url, headers={**headers, "Accept": "application/json"})
    with urllib.request.urlopen(request, timeout=60) as response:
        return json.load(response)


class AzClientWrapper(AzureClient):
    """Talks to the resource manager and retail price REST APIs, following every page."""

    def __init__(
        self,
        subscription_id: str,
        token_provider: TokenProvider,
        *,
        http_get: HttpGet | None = None,
        management_endpoint: str = MANAGEMENT_ENDPOINT,
        retail_prices_endpoint: str = RETAIL_PRICES_ENDPOINT,
    ) -> None:
        if not subscription_id:
            logger.error("unable to create client: subscription id is empty")
            raise ClientCreationError("failed to create client")
        if token_provider is None:
            logger.error("unable to create client: no credentials")
            raise ClientCreationError("failed to create client")
        self.subscription_id = subscription_id
        self._token_provider = token_provider
        self._http_get = http_get or _urllib_get
        self._management_endpoint = management_endpoint.rstrip("/")
        self._retail_prices_endpoint = retail_prices_endpoint

    def _arm_url(self, path: str, params: Mapping[str, str]) -> str:
        sub = urllib.parse.quote(self.subscription_id, safe="")
        query = urllib.parse.urlencode(params, safe="$")
        return f"{self._management_endpoint}/subscriptions/{sub}/{path}?{query}"

    def _arm_headers(self) -> Mapping[str, str]:
        return {"Authorization": f"Bearer {self._token_provider()}"}

    def _pages(
        self, url: str | None, headers: Callable[[], Mapping[str, str]], next_key: str, pager: str
    ) -> Iterator[Mapping[str, Any]]:
        while url:
            try:
                page = self._http_get(url, headers())
            except Exception as exc:
                logger.error("unable to advance page", extra={"pager": pager, "err": str(exc)})
                raise PageAdvanceError(f"failed to advance page: {exc}") from exc
            yield page
            url = page.get(next_key)

    def _list(self, cls: Any, url: str, pager: str) -> list[Any]:
        return [
            cls.from_dict(item)
            for page in self._pages(url, self._arm_headers, "nextLink", pager)
            for item in page.get("value") or []
        ]

    def list_clusters_in_subscription(self) -> list[ManagedCluster]:
        url = self._arm_url(
            "providers/Microsoft.ContainerService/managedClusters",
            {"api-version": CONTAINER_SERVICE_API_VERSION},
        )
        return self._list(ManagedCluster, url, "listClustersInSubscription")

    def list_virtual_machine_scale_sets_owned_vms(self, rg_name: str, vmss_name: str) -> list[VirtualMachineScaleSetVM]:
        rg = urllib.parse.quote(rg_name, safe="")
        vmss = urllib.parse.quote(vmss_name, safe="")
        url = self._arm_url(
            f"resourceGroups/{rg}/providers/Microsoft.Compute/virtualMachineScaleSets/{vmss}/virtualMachines",
            {"api-version": COMPUTE_API_VERSION, "$expand": "instanceView"},
        )
        return self._list(VirtualMachineScaleSetVM, url, "listVirtualMachineScaleSetsOwnedVms")

    def list_virtual_machine_scale_sets_from_resource_group(self, rg_name: str) -> list[VirtualMachineScaleSet]:
        rg = urllib.parse.quote(rg_name, safe="")
        url = self._arm_url(
            f"resourceGroups/{rg}/providers/Microsoft.Compute/virtualMachineScaleSets",
            {"api-version": COMPUTE_API_VERSION},
        )
        return self._list(VirtualMachineScaleSet, url, "listVirtualMachineScaleSetsFromResourceGroup")

    def list_machine_types_by_location(self, location: str) -> list[VirtualMachineSize]:
        loc = urllib.parse.quote(location, safe="")
        url = self._arm_url(
            f"providers/Microsoft.Compute/locations/{loc}/vmSizes",
            {"api-version": COMPUTE_API_VERSION},
        )
        return self._list(VirtualMachineSize, url, "listMachineTypesByLocation")

    def list_prices(self, options: RetailPricesListOptions) -> list[ResourceSku]:
        logger.debug("populating prices with opts %r", options)
        query = urllib.parse.urlencode(options.query(), safe="$'")
        url = f"{self._retail_prices_endpoint}?{query}" if query else self._retail_prices_endpoint
        return [
            ResourceSku.from_dict(item)
            for page in self._pages(url, dict, "NextPageLink", "listPrices")
            for item in page.get("Items") or []
        ]