[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "appendlog"
version = "0.1.0"
description = "Building blocks for a segmented, append-only, crash-recoverable record log stored on disk"
requires-python = ">=3.10"
dependencies = []
keywords = ["log", "append-only", "write-ahead log", "segments", "storage", "crc", "mmap"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Database Engines/Servers",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["appendlog"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
