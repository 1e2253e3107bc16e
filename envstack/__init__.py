"""Provisioning of per-environment AWS VPC, EKS and MySQL stacks."""

__version__ = "0.1.0"
