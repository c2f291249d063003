[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tokenstate"
version = "0.0.1"
description = "Key-value state layout for a token ledger (balances, assets, orders, loans) with a JSON-RPC query server and client"
requires-python = ">=3.10"
dependencies = []
keywords = ["ledger", "token", "state", "key-value", "json-rpc", "wsgi"]
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
    "Topic :: Database",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["tokenstate"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
