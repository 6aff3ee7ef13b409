"""
Router module: unified hot/cache/cold read path.
"""

from billvault.router.results import Found, NotFound, ReadResult, Tier, Unavailable
from billvault.router.router import ReadRouter

__all__ = [
    "ReadRouter",
    "ReadResult",
    "Found",
    "NotFound",
    "Unavailable",
    "Tier",
]
