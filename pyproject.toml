[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gpufeatures"
version = "0.16.0"
description = "GPU node feature labelling and device plugin allocation logic for Kubernetes nodes"
requires-python = ">=3.10"
dependencies = []
keywords = ["gpu", "kubernetes", "labels", "mig", "device-plugin", "node-features"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Hardware",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["gpufeatures"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
