[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "proxykit"
version = "0.1.0"
description = "Building blocks for a tunnelling proxy: access rules, a static hosts table, node parsing, an HTTP proxy handler and connector, traffic obfuscation wrappers, and KCP/QUIC settings."
requires-python = ">=3.10"
keywords = ["proxy", "http-proxy", "tunnel", "obfuscation", "permissions", "hosts", "kcp", "quic"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking",
]
dependencies = [
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["proxykit"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
