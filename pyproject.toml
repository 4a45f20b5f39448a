[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "camstream"
version = "0.1.0"
description = "Camera frame encoders, still image writers and video stream outputs"
requires-python = ">=3.10"
keywords = ["camera", "video", "jpeg", "mjpeg", "dng", "bmp", "png", "exif"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Graphics :: Capture :: Digital Camera",
    "Topic :: Multimedia :: Video",
]
dependencies = [
    "numpy",
    "pillow",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["camstream"]

[tool.pytest.ini_options]
addopts = "-ra"
