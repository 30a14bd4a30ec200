"""
Lease reaper module.
Recovers tasks whose worker died while holding a lease.
"""

from taskq.reaper.main import Reaper

__all__ = ["Reaper"]
