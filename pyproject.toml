[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gptboot"
version = "0.1.0"
description = "Failsafe boot-chain updates on GPT disks: header state, CRCs, partition entry swapping and boot LUN selection"
requires-python = ">=3.10"
dependencies = []
keywords = ["gpt", "partition", "boot", "crc32", "ufs", "emmc", "failsafe-update"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Boot",
    "Topic :: System :: Filesystems",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["gptboot"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
