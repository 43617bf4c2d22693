"""
API Routes Package
"""
from goveed.api.routes import devices, scenes, system

__all__ = [
    "devices",
    "scenes",
    "system",
]
