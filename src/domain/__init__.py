"""Domain models and computations for the portfolio ledger.

This package holds the pure, in-memory (Pydantic) models and engines: currency
conversion, FIFO tax lots, tax liability, performance and holding valuation.
Nothing here performs I/O; inputs arrive from the services layer.
"""

__all__ = [
    "currency",
    "holdings",
    "ledger",
    "lots",
    "performance",
    "pricing",
    "tax",
]
