[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "bottomless"
version = "0.1.0"
description = "Replicate SQLite write-ahead log frames and database snapshots to S3-compatible object storage, and restore them"
requires-python = ">=3.10"
keywords = ["sqlite", "wal", "replication", "backup", "s3", "object-storage"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
    "Topic :: System :: Archiving :: Backup",
]
dependencies = [
    "httpx",
]

[project.optional-dependencies]
test = [
    "pytest",
    "respx",
]

[project.scripts]
bottomless-cli = "bottomless.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["bottomless"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
