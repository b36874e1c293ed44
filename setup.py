"""Setup script for the skillforge assistant package."""

from setuptools import setup, find_packages

setup(
    name="skillforge-assistant",
    version="0.1.0",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.11",
    install_requires=[
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=23.2",
        "prometheus-client>=0.19",
        "tenacity>=8.2",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    description="Skillforge - multi-agent orchestration core for an LLM assistant",
    author="Skillforge Team",
)
