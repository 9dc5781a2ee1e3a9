[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "forgeinfer"
version = "0.5.0"
description = "A computation-graph inference engine with pluggable operator kernels, graph fusion and greedy token generation"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = ["inference", "neural-network", "computation-graph", "attention", "fusion", "generation"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Artificial Intelligence",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["forgeinfer"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
