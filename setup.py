#!/usr/bin/env python3
"""
hostprobe v1.0.0 - Setup Configuration
======================================

Asynchronous host reconnaissance: port sweep, service identification and
OS estimation.

Installation:
    python setup.py install

    OR (development mode):
    pip install -e .
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read long description from README
readme_path = Path(__file__).parent / "README.md"
long_description = readme_path.read_text(encoding="utf-8") if readme_path.exists() else ""

# Core dependencies
REQUIRED_PACKAGES = [
    "jsonschema>=4.0.0",    # Config and fingerprint source validation
    "colorama>=0.4.4",      # Cross-platform colored log output
]

# Optional development dependencies
EXTRAS_REQUIRE = {
    "dev": [
        "pytest>=7.0.0",    # Testing
        "pytest-cov>=4.0.0", # Coverage reporting
        "black>=22.0.0",    # Code formatting
        "pylint>=2.14.0",   # Linting
        "mypy>=0.950",      # Type checking
    ],
}

setup(
    # Package Information
    name="hostprobe",
    version="1.0.0",
    description="Asynchronous host reconnaissance: port sweep, service and OS detection",
    long_description=long_description,
    long_description_content_type="text/markdown",

    # Classification
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Framework :: AsyncIO",
        "Intended Audience :: Information Technology",
        "Intended Audience :: System Administrators",
        "Operating System :: POSIX :: Linux",
        "Operating System :: MacOS",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Networking",
        "Topic :: System :: Networking :: Monitoring",
        "Topic :: Security",
    ],

    # Keywords for searching
    keywords=[
        "network",
        "reconnaissance",
        "port-scanner",
        "service-detection",
        "os-detection",
        "asyncio",
    ],

    # Package Configuration
    packages=find_packages(exclude=["tests", "tests.*", "docs", "examples"]),

    # Python Version Requirement
    python_requires=">=3.8",

    # Dependencies
    install_requires=REQUIRED_PACKAGES,
    extras_require=EXTRAS_REQUIRE,

    zip_safe=False,
)
