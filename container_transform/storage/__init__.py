"""
Storage migration components for container transformation.

This module provides:
- Image service access for new root filesystems
- Full-copy and differential read-write layer drivers
- The change-set trie used by the differential driver
"""
