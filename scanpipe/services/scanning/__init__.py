"""
Scanning Services

Scan workflow built on the tiered cache and the job registry.
"""

from .scan_service import NullScanner, Scanner, ScanResponse, ScanService

__all__ = ["NullScanner", "Scanner", "ScanResponse", "ScanService"]
