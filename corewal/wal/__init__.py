"""Append-only write-ahead log: record format, errors, reader and writer."""