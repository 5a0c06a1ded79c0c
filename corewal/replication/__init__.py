"""Streaming of write-ahead log records to replicas, replica-side receiver and lag tracking."""