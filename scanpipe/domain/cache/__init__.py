"""
Cache Domain Module

Domain-Driven Design implementation for tiered cache management.
Contains entities, value objects and tier repository interfaces.
"""
