[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "covislam"
version = "0.1.0"
description = "Covisibility-graph map building blocks for feature-based visual SLAM: map points, keyframes, two-view geometry, place recognition, loop candidate consistency and local map upkeep."
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = ["slam", "computer-vision", "keyframe", "covisibility", "loop-closure", "bag-of-words"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering :: Image Processing",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["covislam"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
