[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "multiverso"
version = "0.1.0"
description = "A parameter server framework for distributed machine learning over ZeroMQ"
requires-python = ">=3.10"
dependencies = [
    "pyzmq",
]
keywords = ["parameter server", "distributed training", "zeromq", "machine learning"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
    "Topic :: Scientific/Engineering :: Artificial Intelligence",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
multiverso-server = "multiverso.server_main:main"

[tool.hatch.build.targets.wheel]
packages = ["multiverso"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
