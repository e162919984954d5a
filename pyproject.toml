[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tcredirecttap"
version = "0.1.0"
description = "Chained CNI plugin that creates a tap device and redirects its traffic to and from another interface with tc u32 filters"
requires-python = ">=3.12"
dependencies = []
keywords = ["cni", "tap", "tc", "netlink", "microvm", "networking", "container"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
tc-redirect-tap = "tcredirecttap.plugin:main"

[tool.hatch.build.targets.wheel]
packages = ["tcredirecttap"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py312"
