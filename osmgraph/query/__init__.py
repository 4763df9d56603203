from .reconstruction import GraphReconstructor, WayPoint, WayPoints

__all__ = ["GraphReconstructor", "WayPoint", "WayPoints"]
