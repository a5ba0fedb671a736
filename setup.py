#!/usr/bin/env python3
"""
Setup script for the Interactor WebSocket transport
"""

from setuptools import setup, find_packages

setup(
    name="interactor-transport",
    version="0.1.0",
    description="Authenticated, reconnectable channel messaging over WebSocket",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "websockets>=15.0",
        "cryptography>=43.0.1",
        "typer>=0.12.3",
        "rich>=13.9.2",
        "PyYAML>=6.0.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.4.2",
            "pytest-asyncio>=1.2.0",
        ],
    },
    python_requires=">=3.9",
    entry_points={
        'console_scripts': [
            'interactor-client=interactor.cli:main',
        ],
    },
)
