"""
paycore - recurring subscription billing engine.

Tracks subscription lifecycle state, computes billing cycles, generates
invoices, charges them on a schedule and applies dunning on failure.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
