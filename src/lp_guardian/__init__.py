"""LP Guardian: exit gating, canonical PnL and capital consistency for LP positions."""

__version__ = "0.1.0"
