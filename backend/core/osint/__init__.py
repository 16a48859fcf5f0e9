"""
VulnWatch - Vulnerability catalog sources
"""

from backend.core.osint.nvd_client import NVDClient

__all__ = ["NVDClient"]
