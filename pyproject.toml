[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "amplink"
version = "0.1.0"
description = "Virtio rings, virtqueues, virtio devices, ELF header parsing and firmware loader states for asymmetric multiprocessing, modelled over in-memory shared regions"
requires-python = ">=3.10"
dependencies = []
keywords = ["virtio", "virtqueue", "vring", "remoteproc", "amp", "elf", "firmware"]
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
    "Topic :: System :: Distributed Computing",
    "Topic :: Software Development :: Embedded Systems",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["amplink"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
