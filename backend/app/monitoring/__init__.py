"""Prometheus text metrics for the realtime hub."""

from . import metrics, registry

__all__ = ["metrics", "registry"]
