# cloudcost-azure

Hourly cost metrics for the virtual machines behind Azure Kubernetes Service
(AKS) clusters, produced as Prometheus-style gauge samples. The package has no
dependencies outside the standard library.

For every VM in every AKS cluster of a subscription the AKS collector yields:

- `cloudcost_azure_aks_instance_cpu_usd_per_core_hour`
- `cloudcost_azure_aks_instance_memory_usd_per_gib_hour`
- `cloudcost_azure_aks_instance_total_usd_per_hour`

each labelled with `instance`, `region`, `machine_type`, `family`,
`cluster_name`, `price_tier` (`ondemand` or `spot`) and `operating_system`
(`Linux` or `Windows`).

Alongside these, the provider adds scrape-health gauges per collector
(`cloudcost_exporter_collector_last_scrape_error`,
`..._last_scrape_duration_seconds`, `..._last_scrape_time`,
`cloudcost_exporter_azure_collector_success`) and for the provider as a whole
(`cloudcost_exporter_last_scrape_error`, `..._last_scrape_duration_seconds`,
`..._last_scrape_time`), and counts scrapes in two `CounterVec`s.

## Modules

- `cloudcost_azure.metrics`: `Desc`, `Metric`, `ValueType`, `Counter`,
  `CounterVec`, `Registry`, `build_fq_name` and `generate_desc`.
- `cloudcost_azure.client`: resource dataclasses (`ManagedCluster`,
  `VirtualMachineScaleSet`, `VirtualMachineScaleSetVM`, `VirtualMachineSize`,
  `ResourceSku`, ...), `RetailPricesListOptions`, the abstract `AzureClient`
  and the REST client `AzClientWrapper`.
- `cloudcost_azure.machines`: `MachineOperatingSystem`, `MachinePriority`,
  `VirtualMachineInfo`.
- `cloudcost_azure.machine_store`: `MachineStore`.
- `cloudcost_azure.price_store`: `PriceStore`, `MachineSku`, `MachinePrices`.
- `cloudcost_azure.aks`: `AksCollector`.
- `cloudcost_azure.azure`: `Config`, `AzureProvider`, `create_provider`.

## How it works

- `MachineStore.populate_machine_store()` lists the subscription's clusters,
  fetches the machine sizes of every cluster location, then walks each
  cluster's node resource group, its scale sets and the VMs they own (up to
  ten calls at once), recording each VM's name (lower-cased), SKU, family,
  region, priority, operating system, cores and memory. VMs missing any of
  these are skipped. If listing clusters fails the store is left as it was;
  a later failure leaves it empty.
- `PriceStore.populate_price_store()` downloads the retail price list for
  virtual machines (retrying up to five times), keeps entries whose product
  name contains "Virtual Machines" and whose SKU name is not "Low Priority",
  and indexes them by region, priority (spot when the SKU name contains
  "Spot"), operating system (Windows when the product name contains
  "Windows") and SKU. If every attempt fails, the old prices stay.
- On first lookup a VM's retail price is split into a per-core and a per-GiB
  part using a CPU share that depends on the machine family (0.88 compute
  optimized, 0.48 memory and storage optimized, 0.65 general purpose and the
  default).
- `AksCollector.start()` populates both stores in background threads right
  away and then refreshes machines every five minutes and prices every 24
  hours; `stop()` ends the refreshes.

## Install

```
pip install .
```

Tests:

```
pip install ".[test]"
pytest
```

## Usage

The stores talk to Azure through an `AzureClient`, an abstract base class
with five listing methods. Subclass it to plug in your own data source:

```python
from cloudcost_azure.client import AzureClient

class MyClient(AzureClient):
    def list_clusters_in_subscription(self): ...
    def list_virtual_machine_scale_sets_owned_vms(self, rg_name, vmss_name): ...
    def list_virtual_machine_scale_sets_from_resource_group(self, rg_name): ...
    def list_machine_types_by_location(self, location): ...
    def list_prices(self, options): ...
```

Or use `AzClientWrapper`, which calls the Azure resource manager and retail
price REST endpoints with `urllib`, follows every page, and raises
`PageAdvanceError` when a page cannot be fetched. It needs a subscription id
and a callable returning a bearer token; an empty subscription id or a missing
token provider raises `ClientCreationError`. An `http_get` callable can be
passed to replace the HTTP transport.

Build a provider and collect:

```python
from cloudcost_azure.azure import Config, create_provider
from cloudcost_azure.metrics import Registry

provider = create_provider(
    Config(
        subscription_id="00000000-0000-0000-0000-000000000000",
        services=["AKS"],
        token_provider=lambda: "token",
    )
)
registry = Registry()
provider.register_collectors(registry)

for desc in provider.describe():
    print(desc)

for metric in provider.collect():
    print(metric.desc.fq_name, metric.labels, metric.value)
```

`create_provider(config, client)` uses the given client, or an
`AzClientWrapper` built from the config when none is given. An empty
subscription id raises `InvalidSubscriptionIdError`. Service names other
than `AKS` (case-insensitive) are logged and ignored. Each AKS collector is
started as it is created.

`AzureProvider.collect()` runs its collectors concurrently. An error inside a
collector is logged and reported through the error gauges (value 1); samples
the collector yielded before the error are kept.

## Errors

- `MachineNotFoundError`: no VM with that id in the machine store.
- `MachineFamilyNotFoundError`: the family cannot be told from the SKU's
  first letter.
- `PriceInformationNotFoundError`: no price for the VM's region, priority,
  operating system or SKU.
- `VmPriceRetrievalError`: raised by `AksCollector.get_machine_prices` when
  pricing a known VM fails; a subclass of `PriceInformationNotFoundError`.
- `MaxRetriesReachedError`: listing prices failed on every attempt (caught
  and logged by `populate_price_store`).

## What it does not do

There is no command-line program and no HTTP server: nothing serves a
`/metrics` endpoint or formats samples in the Prometheus text format. The
package yields `Metric` objects; exposing them is up to the caller. It also
does not obtain Azure credentials itself; `AzClientWrapper` only calls the
token provider it is given. `Config.collector_timeout` is stored on the
provider but not enforced.