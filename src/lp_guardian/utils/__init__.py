"""Utility helpers."""

from lp_guardian.utils.decimals import elapsed_ms, ms_to_minutes, safe_decimal

__all__ = ["safe_decimal", "elapsed_ms", "ms_to_minutes"]
