[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "falconagent"
version = "5.1.2"
description = "Host monitoring agent that collects Linux system metrics and pushes them to a transfer service"
requires-python = ">=3.10"
dependencies = []
keywords = ["monitoring", "metrics", "agent", "linux", "procfs", "heartbeat", "json-rpc"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
falcon-agent = "falconagent.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["falconagent"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
