"""
Synthetic Store Generator

Populates a relational store with deterministic, referentially-valid
e-commerce data and maintains derived aggregate snapshots over it.
"""

__version__ = "1.0.0"
