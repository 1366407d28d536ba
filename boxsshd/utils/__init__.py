"""Shared utilities for boxsshd."""
