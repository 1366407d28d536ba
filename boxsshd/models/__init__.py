"""Pydantic models for boxsshd configuration."""
