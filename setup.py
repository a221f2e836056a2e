#!/usr/bin/env python3
"""
Setup script for the Emoji Relay
"""

from setuptools import setup, find_namespace_packages

setup(
    name="emoji-relay",
    version="0.1.0",
    description="WebSocket relay and client session for broadcasting emoji chat events",
    packages=find_namespace_packages(include=["server", "server.*", "client", "client.*", "shared", "shared.*"]),
    install_requires=[
        "websockets>=15.0,<16",
        "typer>=0.12.3",
        "rich>=13.9.2",
        "aioconsole>=0.8.1",
        "PyYAML>=6.0.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.4.2",
            "pytest-asyncio>=1.2.0",
        ],
    },
    python_requires=">=3.10",
    entry_points={
        'console_scripts': [
            'emoji-relay-server=server.server:main',
            'emoji-relay-client=client.relay_cli:main',
        ],
    },
)
