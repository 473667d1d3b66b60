"""Sirka site agent - activates packaged static sites on a single host."""

__version__ = "0.1.0"
__author__ = "Sirka Core Team"

from sirka_agent.core.config import Settings

__all__ = ["Settings", "__version__"]
