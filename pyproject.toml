[build-system]
requires = ["setuptools>=61.0"]
build-backend = "setuptools.build_meta"

[project]
name = "sofixer"
version = "2.1.0"
description = "Rebuild section headers and fix up ELF shared objects dumped from memory"
requires-python = ">=3.10"
dependencies = []
keywords = ["elf", "shared-object", "android", "reverse-engineering", "memory-dump", "section-headers"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Disassemblers",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
sofixer = "sofixer.cli:main"

[tool.setuptools.packages.find]
include = ["sofixer*"]

[tool.pytest.ini_options]
addopts = "-ra"
