"""Reconcile states for deploying NIC drivers, device plugins, IPAM and pod security policy objects."""

__version__ = "0.1.0"