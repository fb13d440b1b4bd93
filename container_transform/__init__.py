"""
In-place transformation of running Docker containers into iSulad containers.
"""

__version__ = "1.0.0"
