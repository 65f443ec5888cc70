[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dnsroute"
version = "0.1.0"
description = "DNS forwarding building blocks: domain and IP matchers, query contexts, UDP/TCP/DoT/HTTP servers and pooled upstream transports."
requires-python = ">=3.11"
keywords = [
    "dns",
    "dns-over-tls",
    "dns-over-https",
    "forwarder",
    "resolver",
    "domain-matcher",
    "cidr",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Framework :: AsyncIO",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Name Service (DNS)",
    "Topic :: Software Development :: Libraries :: Python Modules",
    "Typing :: Typed",
]
dependencies = [
    "dnspython>=2.4",
    "httpx[http2]>=0.25",
    "h11>=0.14",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.21",
]

[tool.hatch.build.targets.wheel]
packages = ["dnsroute"]

[tool.hatch.build.targets.sdist]
include = ["dnsroute", "tests", "README.md", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true
