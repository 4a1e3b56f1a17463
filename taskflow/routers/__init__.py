"""
API routers package.
"""

from taskflow.routers import health, realtime

__all__ = [
    "health",
    "realtime",
]
