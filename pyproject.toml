[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "slinkynodes"
version = "0.2.0"
description = "NodeSet pod, volume-claim and Slurm node management logic for running Slurm compute nodes as Kubernetes pods"
requires-python = ">=3.10"
dependencies = []
keywords = ["slurm", "kubernetes", "nodeset", "hpc", "hostlist", "controller"]
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
    "Topic :: System :: Clustering",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["slinkynodes"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
