"""
Shared compute infrastructure for pymixed.

Submodules:
    timing: Execution timing utilities
    linalg: Linear algebra kernels (QR)
"""

from pymixed.core.compute.timing import Timer

__all__ = [
    "Timer",
]
