"""Virtual machine descriptions shared by the machine store, price store and collector."""

from __future__ import annotations

import enum
from dataclasses import dataclass

# Family by the first letter of the size name, per Azure's VM naming conventions.
MACHINE_FAMILY_TYPE_MAP: dict[str, str] = {
    "A": "General purpose",
    "B": "General purpose",
    "D": "General purpose",
    "F": "Compute optimized",
    "E": "Memory optimized",
    "M": "Memory optimized",
    "L": "Storage optimized",
    "N": "GPU accelerated",
    "H": "High performance compute",
}


class MachineOperatingSystem(enum.Enum):
    """Operating system a machine runs."""

    LINUX = 0
    WINDOWS = 1

    @property
    def label(self) -> str:
        return "Linux" if self is MachineOperatingSystem.LINUX else "Windows"

    def __str__(self) -> str:
        return self.label


class MachinePriority(enum.Enum):
    """Pricing tier of a machine."""

    ON_DEMAND = 0
    SPOT = 1

    @property
    def label(self) -> str:
        return "ondemand" if self is MachinePriority.ON_DEMAND else "spot"

    def __str__(self) -> str:
        return self.label


@dataclass
class VirtualMachineInfo:
    """What is known about one machine in a cluster's scale set."""

    name: str = ""
    id: str = ""
    region: str = ""
    owning_vmss: str = ""
    owning_cluster: str = ""
    machine_type_sku: str = ""
    machine_family: str = ""
    operating_system: MachineOperatingSystem = MachineOperatingSystem.LINUX
    priority: MachinePriority = MachinePriority.ON_DEMAND

    num_of_cores: float = 0.0
    memory_in_mib: float = 0.0
    os_disk_size_in_mb: float = 0.0