[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "trafficmngr"
version = "0.1.0"
description = "Install and keep in place the forwarding and masquerading rules of an overlay network with iptables or nftables"
requires-python = ">=3.10"
dependencies = []
keywords = ["iptables", "nftables", "masquerade", "nat", "firewall", "overlay network"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Firewalls",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["trafficmngr"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
