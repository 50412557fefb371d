"""
Linear algebra kernels for pymixed.

Submodules:
    qr: Order-preserving rank-revealing QR
"""

from pymixed.core.compute.linalg.qr import QRResult, dependent_columns_qr

__all__ = [
    "QRResult",
    "dependent_columns_qr",
]
