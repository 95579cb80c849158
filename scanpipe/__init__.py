"""
ScanPipe

Tiered caching and asynchronous job dispatch for expensive, idempotent scans.
"""

__version__ = "0.1.0"
