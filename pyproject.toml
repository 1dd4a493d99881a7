[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kissloop"
version = "0.1.0"
description = "Point-cloud loop closure, keyframe bookkeeping and trajectory export for LiDAR SLAM pipelines"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = [
    "point cloud",
    "lidar",
    "slam",
    "loop closure",
    "registration",
    "icp",
    "voxel grid",
    "kitti",
    "tum",
]
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
    "Topic :: Scientific/Engineering :: Image Processing",
    "Topic :: Scientific/Engineering",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["kissloop"]

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
ignore_missing_imports = true
