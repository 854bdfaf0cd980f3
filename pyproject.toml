[build-system]
requires = ["setuptools>=68"]
build-backend = "setuptools.build_meta"

[project]
name = "wireglider"
version = "0.1.0"
description = "GSO segmentation, receive-side flow aggregation and WireGuard message layouts for a userspace tunnel"
requires-python = ">=3.10"
dependencies = []
keywords = ["wireguard", "vpn", "tun", "gso", "gro", "virtio", "checksum", "networking"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
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

[tool.setuptools.packages.find]
include = ["wireglider*"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
