[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "photograv"
version = "0.1.0"
description = "Building blocks for cosmological N-body gravity: multipole expansion operators, integer coordinates, subhalo finding and hierarchical time-step bookkeeping."
requires-python = ">=3.10"
dependencies = [
    "numpy",
    "scipy",
]
keywords = [
    "cosmology",
    "n-body",
    "gravity",
    "fast multipole method",
    "subhalo",
    "unbinding",
    "time stepping",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Astronomy",
    "Topic :: Scientific/Engineering :: Physics",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["photograv"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
