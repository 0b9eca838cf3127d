"""Providers: the remote APIs resources are reconciled against."""

from converge.providers.base import DataSourceSchema, Provider, ResourceSchema
from converge.providers.local import LocalProvider
from converge.providers.registry import ProviderRegistry

__all__ = ["DataSourceSchema", "LocalProvider", "Provider", "ProviderRegistry", "ResourceSchema"]
