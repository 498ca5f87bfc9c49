[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tailnest"
version = "0.1.0"
description = "Coordination-server core for a mesh VPN: namespaces, pre-auth keys, machines, ACL peer filtering, an OIDC login flow and client configuration profiles."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "vpn",
    "mesh",
    "coordination-server",
    "acl",
    "oidc",
    "namespaces",
    "pre-auth-keys",
]
classifiers = [
    "Development Status :: 3 - Alpha",
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
packages = ["tailnest"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
