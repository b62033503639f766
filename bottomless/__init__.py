"""Replication of SQLite write-ahead logs and snapshots to S3-compatible storage."""

__version__ = "0.1.0"

__all__ = ["admin", "cli", "crc64", "generation", "replicator", "storage", "wal"]