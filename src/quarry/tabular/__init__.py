"""Client for the external tabular execution service."""

from quarry.tabular.client import TabularClient

__all__ = ["TabularClient"]
