[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "conduit"
version = "0.1.0"
description = "Paid chunk transfer between buyers and seeders: wire protocol, seeder handler, buyer client, chunk planning and catalog storage"
requires-python = ">=3.10"
dependencies = []
keywords = ["p2p", "chunks", "merkle", "bitfield", "file-sharing", "lightning", "asyncio"]
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
    "Framework :: AsyncIO",
    "Topic :: Communications :: File Sharing",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["conduit"]

[tool.pytest.ini_options]
addopts = "-ra"
