[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "meshsidecar"
version = "0.4.0"
description = "Sidecar runtime pieces for distributed applications: actor placement, direct messaging, an HTTP API, a pod injector webhook and operator handlers"
requires-python = ">=3.10"
dependencies = [
    "werkzeug",
]
keywords = [
    "sidecar",
    "microservices",
    "actors",
    "consistent-hashing",
    "placement",
    "kubernetes",
    "admission-webhook",
    "wsgi",
]
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
    "Topic :: System :: Distributed Computing",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Application",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["meshsidecar"]

[tool.hatch.build.targets.sdist]
include = [
    "meshsidecar",
    "tests",
]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
