[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rocketlink"
version = "0.1.0"
description = "Wire protocol, remoting client and name-server routing for a RocketMQ-compatible message broker"
requires-python = ">=3.10"
dependencies = []
keywords = ["rocketmq", "messaging", "remoting", "broker", "protocol", "nameserver"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["rocketlink"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
