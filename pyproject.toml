[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "flowdef"
version = "0.1.0"
description = "Flow definitions: tasks, links, loops, retries, error handlers, expressions, mappers and data resolvers"
requires-python = ">=3.10"
dependencies = []
keywords = ["flow", "workflow", "definition", "tasks", "links", "resolver", "mapper", "expression"]
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
    "Topic :: Software Development :: Libraries :: Application Frameworks",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["flowdef"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
