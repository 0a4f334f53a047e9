"""
Utilities package - small helpers shared across the engine.
"""

from deploy_engine.utils.logging import configure_logging, get_logger

__all__ = [
    "configure_logging",
    "get_logger",
]
