[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "bailian_video"
version = "0.1.0"
description = "HTTP service that submits and tracks DashScope Wanx video generation tasks"
requires-python = ">=3.10"
keywords = ["dashscope", "video generation", "wanx", "flask", "http api", "sqlite"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Framework :: Flask",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: Multimedia :: Video",
]
dependencies = [
    "flask",
    "requests",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[project.scripts]
bailian-video = "bailian_video.app:main"

[tool.hatch.build.targets.wheel]
packages = ["bailian_video"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
