[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wrpagent"
version = "0.1.0"
description = "WRP messages, publish/subscribe routing and a self-maintaining websocket client for device agents"
requires-python = ">=3.10"
keywords = ["wrp", "websocket", "pubsub", "device", "agent", "msgpack"]
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
    "Topic :: Internet :: WWW/HTTP",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "msgpack",
    "websocket-client",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
wrpagent-example = "wrpagent.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["wrpagent"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
