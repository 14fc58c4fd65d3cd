[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "agentbridge"
version = "0.2.0"
description = "File-system session registry for cooperating command-line agents: manifests, PID locks, heartbeats, project scopes and reconnect."
requires-python = ">=3.10"
dependencies = []
keywords = ["agents", "ipc", "session", "lock", "heartbeat", "filesystem"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries :: Python Modules",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["agentbridge"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
strict = true
