"""Hourly cost metrics for the virtual machines of Azure Kubernetes Service clusters."""

__version__ = "0.1.0"

__all__ = ["aks", "azure", "client", "machine_store", "machines", "metrics", "price_store"]