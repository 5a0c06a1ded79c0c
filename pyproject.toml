[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "corewal"
version = "0.1.0"
description = "Append-only write-ahead log with a Bitcask-style key-value store and WAL record streaming for replicas"
requires-python = ">=3.10"
dependencies = []
keywords = ["wal", "write-ahead-log", "bitcask", "key-value", "replication", "storage"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Database Engines/Servers",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["corewal"]

[tool.pytest.ini_options]
addopts = "-ra"
