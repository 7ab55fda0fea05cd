"""Pydantic request/result schemas."""
