"""v1 record shapes and the pure v2 -> v1 translation functions."""

from .mapper import map_datacenter, map_instance, map_status

__all__ = ["map_datacenter", "map_instance", "map_status"]
