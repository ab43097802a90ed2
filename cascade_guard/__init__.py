"""
Cascade Guard
=============

Client-side safety layer for destructive cascade deletions.
"""

__version__ = "0.1.0"
