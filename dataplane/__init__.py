"""
Dataplane - connector, incremental sync, data quality and transformation core.
"""

__version__ = "1.0.0"
