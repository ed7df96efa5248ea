"""
Setup script for Relay Core
"""
from setuptools import setup, find_packages

setup(
    name="relay-core",
    version="1.0.0",
    description="Local inference gateway, service supervisor and diagnostics",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "aiohttp>=3.9",
        "fastapi>=0.100",
        "uvicorn>=0.23",
        "psutil>=6.0",
        "rich>=13.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
            "httpx>=0.24",
        ],
    },
    entry_points={
        "console_scripts": [
            "relayctl=relay_core.cli:main",
            "relay-gateway=relay_core.gateway.server:main",
        ],
    },
    zip_safe=False,
)
