[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "relaytunnel"
version = "1.1.0"
description = "Bidirectional TCP forwarding tunnels with statistics, configuration presets and DNS-01 provider helpers"
requires-python = ">=3.10"
dependencies = []
keywords = ["tunnel", "tcp", "forwarding", "relay", "dns-01"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["relaytunnel"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
