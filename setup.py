"""Setup file for development installation."""

from setuptools import setup, find_packages

setup(
    name="plasmamind-chat",
    version="0.1.0",
    description="Response orchestration engine for the PlasmaMind Gemini chat assistant",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.9",
    install_requires=[
        "fastapi>=0.100",
        "pydantic>=2.0",
        "structlog>=23.1",
        "google-generativeai>=0.8.3",
        "google-api-core>=2.11",
        "httpx>=0.27",
        "prometheus-client>=0.17",
        "opentelemetry-instrumentation-fastapi>=0.41b0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
)
