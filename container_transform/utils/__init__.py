"""
Shared helpers for container transformation.
"""
