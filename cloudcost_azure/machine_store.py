"""Inventory of the virtual machines that make up the AKS clusters of a subscription."""

from __future__ import annotations

import functools
import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from typing import TypeVar

from .client import (
    VIRTUAL_MACHINE_PRIORITY_SPOT,
    AzureClient,
    ManagedCluster,
    VirtualMachineScaleSet,
    VirtualMachineScaleSetVM,
    VirtualMachineSize,
)
from .machines import MACHINE_FAMILY_TYPE_MAP, MachineOperatingSystem, MachinePriority, VirtualMachineInfo

logger = logging.getLogger(__name__)

CONCURRENCY_LIMIT = 10
MACHINE_REFRESH_INTERVAL = 5 * 60.0  # seconds

_T = TypeVar("_T")


class MachineNotFoundError(LookupError):
    """The machine is not in the store."""

    def __init__(self, message: str = "machine not found in map") -> None:
        super().__init__(message)


class MachineFamilyNotFoundError(LookupError):
    """The machine family could not be told from the SKU."""

    def __init__(self, message: str = "machine family not able to be determined by SKU") -> None:
        super().__init__(message)


def _run_concurrently(tasks: Iterable[Callable[[], _T]]) -> list[_T]:
    """Run the tasks on a bounded pool; the first failure is raised and pending tasks are cancelled."""
    with ThreadPoolExecutor(max_workers=CONCURRENCY_LIMIT) as pool:
        futures = [pool.submit(task) for task in tasks]
        try:
            return [future.result() for future in futures]
        except BaseException:
            for future in futures:
                future.cancel()
            raise


def _vm_profile(vmss: VirtualMachineScaleSet):
    return vmss.properties.virtual_machine_profile if vmss.properties else None


def machine_scale_set_priority(vmss: VirtualMachineScaleSet) -> MachinePriority:
    """Spot if the scale set's machines are spot machines, on-demand otherwise."""
    profile = _vm_profile(vmss)
    if profile is not None and profile.priority == VIRTUAL_MACHINE_PRIORITY_SPOT:
        return MachinePriority.SPOT
    return MachinePriority.ON_DEMAND


def machine_scale_set_operating_system(vmss: VirtualMachineScaleSet) -> MachineOperatingSystem:
    """Linux if the scale set has a Linux configuration, Windows otherwise."""
    profile = _vm_profile(vmss)
    os_profile = profile.os_profile if profile is not None else None
    if os_profile is not None and os_profile.linux_configuration is not None:
        return MachineOperatingSystem.LINUX
    return MachineOperatingSystem.WINDOWS


class MachineStore:
    """Machines of every cluster in the subscription, keyed by VM id, with machine sizes by location."""

    def __init__(
        self,
        client: AzureClient,
        machine_map: dict[str, VirtualMachineInfo | None] | None = None,
        machine_size_map: dict[str, dict[str, VirtualMachineSize]] | None = None,
    ) -> None:
        self._client = client
        self.machine_map: dict[str, VirtualMachineInfo | None] = machine_map if machine_map is not None else {}
        self.machine_size_map: dict[str, dict[str, VirtualMachineSize]] = (
            machine_size_map if machine_size_map is not None else {}
        )
        self._machine_map_lock = threading.RLock()
        self._machine_size_map_lock = threading.RLock()

    def get_vm_info_by_vm_id(self, vm_id: str) -> VirtualMachineInfo | None:
        """The stored machine with this id."""
        with self._machine_map_lock:
            try:
                return self.machine_map[vm_id]
            except KeyError:
                raise MachineNotFoundError() from None

    def get_vm_info_from_vmss(
        self,
        rg_name: str,
        vmss_name: str,
        cluster: str,
        priority: MachinePriority,
        os_info: MachineOperatingSystem,
    ) -> dict[str, VirtualMachineInfo]:
        """Describe the machines of one scale set; machines missing needed details are skipped."""
        with self._machine_size_map_lock:
            try:
                vms = self._client.list_virtual_machine_scale_sets_owned_vms(rg_name, vmss_name)
            except Exception as exc:
                logger.error("failed to get VMs from VMSS from client: %s", exc)
                raise

            vm_info: dict[str, VirtualMachineInfo] = {}
            for vm in vms:
                try:
                    vm_name = self.get_machine_name(vm)
                except ValueError:
                    continue

                if vm.sku is None or vm.sku.name is None:
                    logger.debug("no VM Sku found for %s", vm_name)
                    continue
                vm_sku = vm.sku.name

                try:
                    vm_family = self.get_machine_family_from_sku(vm_sku)
                except MachineFamilyNotFoundError:
                    continue

                vm_region = vm.location or ""
                if not vm_region:
                    logger.debug("no VM region found for %s", vm_name)
                    continue

                if vm.properties is None or vm.properties.vm_id is None:
                    logger.debug("no VM ID found for %s (region %s, sku %s)", vm_name, vm_region, vm_sku)
                    continue
                vm_id = vm.properties.vm_id

                size_info = self.machine_size_map.get(vm_region, {}).get(vm_sku)
                if size_info is None:
                    logger.debug("no VM sizing info found for %s (region %s, sku %s)", vm_name, vm_region, vm_sku)
                    continue

                logger.debug(
                    "found machine information: %s (%s) in %s of cluster %s", vm_name, vm_id, vmss_name, cluster
                )
                vm_info[vm_id] = VirtualMachineInfo(
                    name=vm_name,
                    id=vm_id,
                    region=vm_region,
                    owning_vmss=vmss_name,
                    owning_cluster=cluster,
                    machine_type_sku=vm_sku,
                    machine_family=vm_family,
                    priority=priority,
                    operating_system=os_info,
                    num_of_cores=float(size_info.number_of_cores or 0),
                    memory_in_mib=float(size_info.memory_in_mb or 0),
                    os_disk_size_in_mb=float(size_info.os_disk_size_in_mb or 0),
                )

        logger.debug(
            "finished collecting machine info for VMSS %s of cluster %s in %s: %d machines",
            vmss_name, cluster, rg_name, len(vm_info),
        )
        return vm_info

    def get_vmss_info_from_resource_group(self, rg_name: str, cluster_name: str) -> dict[str, VirtualMachineScaleSet]:
        """The scale sets of a resource group, by name."""
        logger.info("getting VMSS info from resource group %s of cluster %s", rg_name, cluster_name)
        vmss_list = self._client.list_virtual_machine_scale_sets_from_resource_group(rg_name)

        vmss_info: dict[str, VirtualMachineScaleSet] = {}
        for vmss in vmss_list:
            if not vmss.name:
                logger.error("unable to determine VMSS name: %r", vmss)
                continue
            vmss_info[vmss.name] = vmss

        logger.debug("finished collecting %d VMSS in %s of cluster %s", len(vmss_info), rg_name, cluster_name)
        return vmss_info

    def get_clusters_in_subscription(self) -> list[ManagedCluster]:
        """The managed clusters of the subscription."""
        logger.info("fetching cluster list from subscription")
        clusters = self._client.list_clusters_in_subscription()
        logger.debug("found %d clusters", len(clusters))
        return clusters

    def get_machine_types_by_location(self, location: str) -> None:
        """Replace the stored machine sizes of a location with fresh ones."""
        logger.info("fetching machine types in location %s", location)
        sizes = self._client.list_machine_types_by_location(location)

        with self._machine_size_map_lock:
            self.machine_size_map[location] = {size.name or "": size for size in sizes}
        logger.debug("found %d machine sizes in %s", len(sizes), location)

    def get_list_of_vms_for_subscription(self) -> list[VirtualMachineInfo | None]:
        """Every stored machine."""
        with self._machine_map_lock:
            return list(self.machine_map.values())

    def _vms_in_scale_set(
        self, rg_name: str, cluster_name: str, vmss_name: str, vmss: VirtualMachineScaleSet
    ) -> dict[str, VirtualMachineInfo]:
        return self.get_vm_info_from_vmss(
            rg_name,
            vmss_name,
            cluster_name,
            machine_scale_set_priority(vmss),
            machine_scale_set_operating_system(vmss),
        )

    def populate_machine_store(self) -> None:
        """Rebuild the store from the clusters of the subscription.

        If listing clusters fails the store is left alone; any later failure leaves it empty.
        """
        start = time.monotonic()
        logger.info("populating machine store")

        try:
            clusters = self.get_clusters_in_subscription()
        except Exception as exc:
            logger.error("error listing clusters: %s", exc)
            return

        locations = {cluster.location or "" for cluster in clusters}

        with self._machine_map_lock:
            self.machine_map.clear()
            with self._machine_size_map_lock:
                self.machine_size_map.clear()

            try:
                _run_concurrently(
                    functools.partial(self.get_machine_types_by_location, location) for location in locations
                )
            except Exception as exc:
                logger.error("error populating machine sizes: %s", exc)
                return

            targets: list[tuple[str, str]] = []
            for cluster in clusters:
                cluster_name = cluster.name or ""
                rg_name = (cluster.properties.node_resource_group if cluster.properties else None) or ""
                if not cluster_name:
                    logger.error("cluster name not found: %r", cluster)
                    continue
                if not rg_name:
                    logger.error("resource group name not found: %r", cluster)
                    continue
                targets.append((rg_name, cluster_name))

            try:
                vmss_maps = _run_concurrently(
                    functools.partial(self.get_vmss_info_from_resource_group, rg_name, cluster_name)
                    for rg_name, cluster_name in targets
                )
                vm_maps = _run_concurrently(
                    functools.partial(self._vms_in_scale_set, rg_name, cluster_name, vmss_name, vmss)
                    for (rg_name, cluster_name), vmss_map in zip(targets, vmss_maps)
                    for vmss_name, vmss in vmss_map.items()
                )
            except Exception as exc:
                logger.error("error populating machine store: %s", exc)
                return

            vm_info_map: dict[str, VirtualMachineInfo | None] = {}
            for vm_map in vm_maps:
                vm_info_map.update(vm_map)
            self.machine_map = vm_info_map

        logger.info(
            "machine store populated in %.3fs: %d machines in %d clusters",
            time.monotonic() - start, len(vm_info_map), len(clusters),
        )

    def get_machine_name(self, vm: VirtualMachineScaleSetVM) -> str:
        """The lower-cased computer name of a machine."""
        if vm.properties is None or vm.properties.instance_view is None:
            message = f"unable to determine machine name, instanceView property not set: {vm!r}"
            logger.error(message)
            raise ValueError(message)
        computer_name = vm.properties.instance_view.computer_name or ""
        if not computer_name:
            message = f"unable to determine machine name: {vm!r}"
            logger.error(message)
            raise ValueError(message)
        return computer_name.lower()

    def get_machine_family_from_sku(self, sku: str) -> str:
        """The machine family named by the first letter of the size, per Azure's naming conventions."""
        sku = sku.removeprefix("Standard_")
        family = MACHINE_FAMILY_TYPE_MAP.get(sku[:1]) if sku else None
        if family is None:
            error = MachineFamilyNotFoundError()
            logger.error(str(error))
            raise error
        return family