[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nicoperator"
version = "0.1.0"
description = "Reconcile states for deploying NIC drivers, device plugins and IPAM components into a cluster"
requires-python = ">=3.10"
dependencies = []
keywords = ["kubernetes", "operator", "ofed", "sriov", "rdma", "reconcile"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["nicoperator"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
