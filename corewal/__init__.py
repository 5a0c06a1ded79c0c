"""Write-ahead log, Bitcask-style key-value store and WAL record streaming for replicas."""

__version__ = "0.1.0"