[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "crateyard"
version = "0.1.0"
description = "Fetch crates from registries, git or local paths and run commands against them, optionally inside a Docker sandbox."
requires-python = ">=3.10"
keywords = ["cargo", "crates", "sandbox", "docker", "build", "subprocess"]
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
    "Topic :: Software Development :: Build Tools",
]
dependencies = []

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["crateyard"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
