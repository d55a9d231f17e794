import math

import pytest

from cloudcost_azure.client import AzureClient, ResourceSku, RetailPricesListOptions
from cloudcost_azure.machines import MachineOperatingSystem, MachinePriority, VirtualMachineInfo
from cloudcost_azure.price_store import (
    AZ_API_VERSION,
    AZURE_METER_REGION,
    AZURE_PRICE_SEARCH_FILTER,
    LIST_PRICES_MAX_RETRIES,
    MachinePrices,
    MachineSku,
    PriceInformationNotFoundError,
    PriceStore,
    machine_operating_system_from_sku,
    machine_priority_from_sku,
)

LINUX = MachineOperatingSystem.LINUX
WINDOWS = MachineOperatingSystem.WINDOWS
ON_DEMAND = MachinePriority.ON_DEMAND
SPOT = MachinePriority.SPOT


class FakePriceClient(AzureClient):
    def __init__(self, prices=None, error=None):
        self.prices = prices or []
        self.error = error
        self.calls = []

    def list_clusters_in_subscription(self):
        return []

    def list_virtual_machine_scale_sets_owned_vms(self, rg_name, vmss_name):
        return []

    def list_virtual_machine_scale_sets_from_resource_group(self, rg_name):
        return []

    def list_machine_types_by_location(self, location):
        return []

    def list_prices(self, options):
        self.calls.append(options)
        if self.error is not None:
            raise self.error
        return list(self.prices)


API_RETURNS = [
    ResourceSku(arm_sku_name="Standard_D4s_v3", sku_name="D4s v3", arm_region_name="westus",
                product_name="Virtual Machines D Series", retail_price=0.1),
    ResourceSku(arm_sku_name="Standard_D8s_v3", sku_name="D8s v3", arm_region_name="centraleurope",
                product_name="Virtual Machines D Series", retail_price=0.1),
    ResourceSku(arm_sku_name="Standard_D16s_v3", sku_name="D16s v3 Spot", arm_region_name="centraleurope",
                product_name="Virtual Machines D Series", retail_price=0.01),
    ResourceSku(arm_sku_name="Standard_D4s_v3", sku_name="D4s v3 Low Priority", arm_region_name="centraleurope",
                product_name="Virtual Machines D Series", retail_price=0.01),
]


def test_populate_price_store_base_case():
    client = FakePriceClient(prices=API_RETURNS)
    store = PriceStore(client)
    store.populate_price_store()

    expected = {
        "westus": {
            ON_DEMAND: {LINUX: {"Standard_D4s_v3": MachineSku(retail_price=0.1)}},
            SPOT: {},
        },
        "centraleurope": {
            ON_DEMAND: {LINUX: {"Standard_D8s_v3": MachineSku(retail_price=0.1)}},
            SPOT: {LINUX: {"Standard_D16s_v3": MachineSku(retail_price=0.01)}},
        },
    }
    assert store.region_map == expected
    assert len(client.calls) == 1


def test_populate_price_store_uses_default_options():
    client = FakePriceClient(prices=API_RETURNS)
    PriceStore(client).populate_price_store()
    assert client.calls == [
        RetailPricesListOptions(
            api_version=AZ_API_VERSION,
            filter=AZURE_PRICE_SEARCH_FILTER,
            meter_region=AZURE_METER_REGION,
        )
    ]


def test_populate_price_store_error_retries_and_leaves_map_empty():
    client = FakePriceClient(error=RuntimeError("error paging through retail prices"))
    store = PriceStore(client)
    store.populate_price_store()
    assert store.region_map == {}
    assert len(client.calls) == LIST_PRICES_MAX_RETRIES == 5


def test_populate_price_store_error_keeps_previous_prices():
    existing = {"westus": {ON_DEMAND: {LINUX: {"sku": MachineSku(retail_price=2.0)}}}}
    store = PriceStore(FakePriceClient(error=RuntimeError("boom")), region_map=existing)
    store.populate_price_store()
    assert store.region_map == {"westus": {ON_DEMAND: {LINUX: {"sku": MachineSku(retail_price=2.0)}}}}


def test_populate_price_store_skips_missing_region_and_non_vm_products():
    prices = [
        ResourceSku(arm_sku_name="a", sku_name="a", arm_region_name="",
                    product_name="Virtual Machines D Series", retail_price=1.0),
        ResourceSku(arm_sku_name="b", sku_name="b", arm_region_name="westus",
                    product_name="Storage", retail_price=1.0),
        ResourceSku(arm_sku_name="c", sku_name="c", arm_region_name="westus",
                    product_name="Virtual Machines D Series Windows", retail_price=3.0),
    ]
    store = PriceStore(FakePriceClient(prices=prices))
    store.populate_price_store()
    assert store.region_map == {
        "westus": {ON_DEMAND: {WINDOWS: {"c": MachineSku(retail_price=3.0)}}, SPOT: {}},
    }


@pytest.fixture
def fake_price_store():
    return PriceStore(
        FakePriceClient(),
        region_map={"region1": {ON_DEMAND: {LINUX: {"sku1": MachineSku(retail_price=1.0)}}}},
    )


@pytest.mark.parametrize(
    "vm_info",
    [
        None,
        VirtualMachineInfo(priority=ON_DEMAND, operating_system=LINUX, machine_type_sku="sku1"),
        VirtualMachineInfo(priority=ON_DEMAND, region="region1", operating_system=LINUX),
        VirtualMachineInfo(priority=ON_DEMAND, region="region2", operating_system=WINDOWS, machine_type_sku="sku3"),
        VirtualMachineInfo(priority=SPOT, region="region1", operating_system=LINUX, machine_type_sku="sku1"),
        VirtualMachineInfo(priority=ON_DEMAND, region="region1", operating_system=WINDOWS, machine_type_sku="sku1"),
        VirtualMachineInfo(priority=ON_DEMAND, region="region1", operating_system=LINUX, machine_type_sku="sku9"),
    ],
    ids=["nil", "missing-region", "missing-sku", "not-in-map", "no-priority", "no-os", "no-sku"],
)
def test_get_price_info_not_found(fake_price_store, vm_info):
    with pytest.raises(PriceInformationNotFoundError):
        fake_price_store.get_price_info_from_vm_info(vm_info)


def test_get_price_info_all_information_complete(fake_price_store):
    vm_info = VirtualMachineInfo(
        priority=ON_DEMAND,
        region="region1",
        operating_system=LINUX,
        machine_type_sku="sku1",
        machine_family="General purpose",
        num_of_cores=4.0,
        memory_in_mib=16000.0,
    )
    price = fake_price_store.get_price_info_from_vm_info(vm_info)
    assert price.retail_price == 1.0
    assert price.machine_prices_breakdown is not None
    assert price.machine_prices_breakdown.price_per_core == pytest.approx(0.1625)
    assert price.machine_prices_breakdown.price_per_gib == pytest.approx(0.0224)


def test_get_price_info_keeps_existing_breakdown():
    breakdown = MachinePrices(price_per_core=0.2, price_per_gib=0.3)
    store = PriceStore(
        FakePriceClient(),
        region_map={"r": {ON_DEMAND: {LINUX: {"s": MachineSku(retail_price=0.1, machine_prices_breakdown=breakdown)}}}},
    )
    price = store.get_price_info_from_vm_info(VirtualMachineInfo(region="r", machine_type_sku="s"))
    assert price == MachineSku(retail_price=0.1, machine_prices_breakdown=MachinePrices(0.2, 0.3))


def test_get_price_breakdown_unknown_family_uses_default(fake_price_store):
    vm_info = VirtualMachineInfo(machine_family="Unknown", num_of_cores=4.0, memory_in_mib=16000.0)
    prices = fake_price_store.get_price_breakdown(vm_info, 1.0)
    assert prices.price_per_core == pytest.approx(0.1625)
    assert prices.price_per_gib == pytest.approx(0.0224)


def test_get_price_breakdown_compute_optimized(fake_price_store):
    vm_info = VirtualMachineInfo(machine_family="Compute optimized", num_of_cores=2.0, memory_in_mib=1024.0)
    prices = fake_price_store.get_price_breakdown(vm_info, 1.0)
    assert prices.price_per_core == pytest.approx(0.44)
    assert prices.price_per_gib == pytest.approx(0.12)


def test_get_price_breakdown_zero_cores_is_infinite(fake_price_store):
    prices = fake_price_store.get_price_breakdown(VirtualMachineInfo(), 1.0)
    assert prices.price_per_core == math.inf
    assert prices.price_per_gib == math.inf


@pytest.mark.parametrize(
    "sku, expected",
    [
        (ResourceSku(product_name="Virtual Machines D Series", sku_name="D4s v3"), True),
        (ResourceSku(product_name="Virtual Machines D Series", sku_name="D4s v3 Low Priority"), False),
        (ResourceSku(product_name="Storage", sku_name="D4s v3"), False),
        (ResourceSku(product_name="", sku_name="D4s v3"), False),
        (ResourceSku(product_name="Virtual Machines D Series", sku_name=""), False),
    ],
)
def test_is_relevant_price(fake_price_store, sku, expected):
    assert fake_price_store.is_relevant_price(sku) is expected


@pytest.mark.parametrize(
    "product_name, expected",
    [
        ("Virtual Machines Esv4 Series", LINUX),
        ("Virtual Machines D Series Windows", WINDOWS),
    ],
)
def test_determine_machine_operating_system(product_name, expected):
    assert machine_operating_system_from_sku(ResourceSku(product_name=product_name)) is expected


@pytest.mark.parametrize(
    "sku_name, expected",
    [
        ("Standard_E16pds_v5 Low Priority", ON_DEMAND),
        ("B4ls v2 Spot", SPOT),
    ],
)
def test_determine_machine_priority(sku_name, expected):
    assert machine_priority_from_sku(ResourceSku(sku_name=sku_name)) is expected