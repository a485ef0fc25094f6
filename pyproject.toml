[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vipnet"
version = "0.8.2"
description = "Virtual IP helpers: address and route modelling, gratuitous ARP/NDP announcements, DNS-driven IP updates and egress SNAT rule management"
requires-python = ">=3.10"
dependencies = []
keywords = ["vip", "virtual-ip", "arp", "ndp", "iptables", "egress", "snat", "networking"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
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
packages = ["vipnet"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
