[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "httpcatch"
version = "0.1.0"
description = "WSGI middleware for exception recovery, security headers, forwarded headers, structured request logging and rate limiting, plus RSA helpers"
requires-python = ">=3.10"
keywords = ["wsgi", "middleware", "rate-limit", "logging", "forwarded", "rsa"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Middleware",
    "Topic :: Security :: Cryptography",
    "Topic :: System :: Logging",
]
dependencies = [
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["httpcatch"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
