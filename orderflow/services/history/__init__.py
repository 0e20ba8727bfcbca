"""Append-only order history ledger."""
