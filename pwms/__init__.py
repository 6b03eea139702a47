"""
PWMS - offline-first sync core for the factory management backend.

Quality and shipment mirrors with a pollable change log, and a local-first
queue replayed to the remote system of record.
"""

try:
    from importlib.metadata import version

    __version__ = version("pwms")
except Exception:
    __version__ = "0.0.0"

__all__ = ["__version__"]
