[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "camhub"
version = "0.1.0"
description = "Camera hub building blocks: MP4 and fragmented MP4 writing, motion detection, livestream chunking and video delivery tracking"
requires-python = ">=3.10"
keywords = ["camera", "mp4", "fmp4", "h264", "motion-detection", "livestream", "mjpeg", "raspberry-pi"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Video :: Capture",
]
dependencies = [
    "numpy",
    "pillow",
    "requests",
    "scipy",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["camhub"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
