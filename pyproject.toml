[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "shardmigrate"
version = "0.1.0"
description = "Split one large SQLite table into hash-sharded SQLite databases, with resumable progress"
requires-python = ">=3.10"
keywords = ["sqlite", "sharding", "migration", "database", "etl"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
]
dependencies = [
    "python-dotenv",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
shardmigrate = "shardmigrate.migrate:main"

[tool.hatch.build.targets.wheel]
packages = ["shardmigrate"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]
