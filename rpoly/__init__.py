"""
rPoly — trading platform layer.

Provides the shared infrastructure the trading workflows run on:
settings, structured logging, the error taxonomy, atomic state persistence
and the gateway / notification connectors.
"""

from rpoly.version import APP_NAME, VERSION

__all__ = ["APP_NAME", "VERSION"]
