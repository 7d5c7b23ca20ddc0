[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "bwtest"
version = "0.1.0"
description = "Building blocks for network bandwidth measurement: timing, socket helpers and TCP/UDP stream handling"
requires-python = ">=3.10"
dependencies = []
keywords = ["bandwidth", "network", "throughput", "tcp", "udp", "jitter", "measurement"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Monitoring",
    "Topic :: System :: Benchmark",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["bwtest"]

[tool.pytest.ini_options]
addopts = "-ra"
