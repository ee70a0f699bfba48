# src/turtleops/__init__.py
"""
turtleops: sea-turtle nesting monitoring console.

Modules:
- tags       four-position flipper-tag sets and change classification
- identity   new turtle vs recapture, UNNAMED- names, naming + research
- history    tag-history audit rows
- intake     encounter form draft + submit pipeline
- observations  observation review list, detail and CSV rows
- reporting  tag-change report and CMTTP / CSV exports
- web        FastAPI JSON API (``uvicorn turtleops.web:app``)
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

__all__ = ["__version__"]

try:
    __version__ = version("turtleops")
except PackageNotFoundError:
    # Source checkout, not installed.
    __version__ = "0.0.0+local"
