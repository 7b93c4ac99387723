[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "bleatt"
version = "0.1.0"
description = "Bluetooth Low Energy Attribute Protocol engine: attribute server, client discovery and remote attribute model"
requires-python = ">=3.10"
dependencies = []
keywords = ["bluetooth", "ble", "att", "gatt", "protocol"]
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
    "Topic :: Communications",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["bleatt"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
