[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "xfeatlite"
version = "0.1.0"
description = "XFeat keypoint detection, description and matching in plain NumPy"
requires-python = ">=3.10"
dependencies = ["numpy"]
keywords = ["xfeat", "keypoints", "feature matching", "computer vision", "descriptors"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Image Recognition",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["xfeatlite"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
