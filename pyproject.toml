[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "balancegate"
version = "0.1.0"
description = "Round-robin HTTP load balancer with health checks and Redis-backed token-bucket rate limiting"
requires-python = ">=3.10"
keywords = ["load balancer", "reverse proxy", "round robin", "rate limiting", "token bucket", "redis", "wsgi"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Web Environment",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Middleware",
]
dependencies = [
    "pyyaml",
    "redis",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
balancegate = "balancegate.app:main"
balancegate-backends = "balancegate.backends:main"

[tool.hatch.build.targets.wheel]
packages = ["balancegate"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
