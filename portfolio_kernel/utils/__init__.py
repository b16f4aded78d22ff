"""Utility functions for the portfolio kernel."""

from portfolio_kernel.utils.hashing import canonicalize_json, hash_payload, to_json_value

__all__ = ["canonicalize_json", "hash_payload", "to_json_value"]
