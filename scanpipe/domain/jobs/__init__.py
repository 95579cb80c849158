"""
Jobs Domain Module

Job entities, payload union, lifecycle events and the job store interface.
"""
