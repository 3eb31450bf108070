[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "carbond"
version = "0.1.0"
description = "Graphite/Carbon metric server library: receivers, parsers, whisper persister and tag queue"
requires-python = ">=3.10"
dependencies = []
keywords = ["graphite", "carbon", "metrics", "whisper", "monitoring", "time-series"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
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

[tool.hatch.build.targets.wheel]
packages = ["carbond"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
