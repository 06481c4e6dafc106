[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sagax"
version = "0.1.0"
description = "Service toolkit: request context propagation, JSON response envelopes, structured logging, HTTP transport wrappers, caching, distributed locks, e-mail, graceful shutdown and task queue models."
requires-python = ">=3.10"
keywords = ["context", "logging", "tracing", "redis", "lock", "http", "response", "smtp", "tasks"]
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
    "Topic :: Software Development :: Libraries",
]
dependencies = []

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["sagax"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]
