[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "icmrelay"
version = "0.1.0"
description = "Building blocks of a cross-chain message relayer: relayer identifiers, state storage, validator tracking and Teleporter message handling."
requires-python = ">=3.10"
keywords = ["relayer", "cross-chain", "warp", "teleporter", "validators"]
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
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "pycryptodome",
    "redis",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["icmrelay"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
