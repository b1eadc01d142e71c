[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nodesetctl"
version = "0.4.0"
description = "NodeSet pod, volume claim and Slurm node control logic for cluster operators"
requires-python = ">=3.10"
dependencies = []
keywords = ["slurm", "kubernetes", "nodeset", "operator", "hpc", "cluster"]
classifiers = [
    "Development Status :: 4 - Beta",
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
packages = ["nodesetctl"]

[tool.pytest.ini_options]
addopts = "-ra"
