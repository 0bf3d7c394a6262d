"""
Stock Kernel

An append-only perishable stock ledger with:
- Idempotent movement application
- FEFO batch consumption
- Derived (never authoritative) quantity-on-hand
- Append-only price history
"""

__version__ = "0.1.0"
