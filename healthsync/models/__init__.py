"""Pydantic schemas returned by the sync engine to its callers."""
