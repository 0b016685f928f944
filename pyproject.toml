[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tinytorrent"
version = "0.1.0"
description = "A small BitTorrent client with a terminal progress view and an in-memory tracker for local testing"
requires-python = ">=3.11"
keywords = ["bittorrent", "torrent", "p2p", "bencode", "tracker", "file-sharing"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: End Users/Desktop",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Communications :: File Sharing",
]
dependencies = [
    "aiohttp",
    "rich",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
torrent-client = "tinytorrent.cli:main"
faketracker = "tinytorrent.faketracker:main"

[tool.hatch.build.targets.wheel]
packages = ["tinytorrent"]

[tool.hatch.build.targets.sdist]
include = ["tinytorrent", "tests", "README.md", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
target-version = "py311"
line-length = 100

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true

[tool.coverage.run]
source = ["tinytorrent"]
branch = true
