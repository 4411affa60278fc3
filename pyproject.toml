[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "loccorr"
version = "0.0.1"
description = "Image processing and stepper-motor control for keeping a target in place on camera frames"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = [
    "image processing",
    "median filter",
    "running median",
    "binary morphology",
    "connected components",
    "stepper motors",
    "position correction",
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
    "Topic :: Scientific/Engineering :: Image Processing",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["loccorr"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
