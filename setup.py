#!/usr/bin/env python3
"""
Setup script for replstream - MySQL binlog replication client.
"""

from pathlib import Path
from setuptools import setup, find_packages

this_directory = Path(__file__).parent

readme_path = this_directory / "README.md"
long_description = ""
if readme_path.exists():
    long_description = readme_path.read_text()

setup(
    name="replstream",
    version="0.3.0",
    description="MySQL binlog replication client: typed row change events with GTID resume",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Sabot Team",
    author_email="team@sabot.io",
    license="Apache-2.0",

    packages=find_packages(exclude=["tests*", "examples*", "docs*"]),
    include_package_data=True,

    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: Apache Software License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Database",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],

    python_requires=">=3.8",

    install_requires=[
        "pymysql>=1.0.0",  # Auth scrambles, constants, schema repository
        "pyarrow>=10.0.0",  # Arrow RecordBatch output
        "rich>=12.0.0",
        "typer>=0.7.0",
    ],

    extras_require={
        # caching_sha2_password full authentication over plain TCP
        "rsa": ["cryptography>=3.0"],
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
            "pytest-mock>=3.12.0",
        ],
    },

    entry_points={
        "console_scripts": [
            "replstream = replstream.cli:main",
        ],
    },

    package_data={
        "replstream": ["py.typed"],
    },

    zip_safe=False,
)
