"""
API - HTTP 接口层
"""

from .handler import DiscoveryHandler, RequirementsRequest

__all__ = ["DiscoveryHandler", "RequirementsRequest"]
