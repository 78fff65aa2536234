"""
Agricultural Sensor Quality Pipeline

Cleans, calibrates and quality-scores IoT sensor readings from farmlands and
persists them as a partitioned, queryable Parquet dataset with checkpointed,
resumable batch execution.
"""

__version__ = "1.0.0"
