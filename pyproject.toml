[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "envoyacl"
version = "0.1.0"
description = "Access control rules for cluster API servers, VPN and ingress traffic, rendered as Envoy RBAC filter patches"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "envoy",
    "istio",
    "rbac",
    "acl",
    "cidr",
    "admission-webhook",
    "firewall",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Firewalls",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["envoyacl"]

[tool.hatch.build.targets.sdist]
include = ["envoyacl", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
