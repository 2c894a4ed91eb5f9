"""Version metadata for the DPS server-bar plugin."""
from __future__ import annotations

__version__ = "0.3.0"
