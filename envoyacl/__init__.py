"""Envoy RBAC access control rules for cluster API, VPN and ingress traffic, with an in-memory actuator, webhook and validator."""

__version__ = "0.1.0"