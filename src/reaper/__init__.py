"""
Reaper module.
Contains the lease reaper for recovering expired deliveries.
"""

from src.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
