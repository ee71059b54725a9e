"""Setup file for development installation."""

from setuptools import setup, find_namespace_packages

setup(
    name="sagespark-chat",
    version="0.1.0",
    packages=find_namespace_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.9",
    install_requires=[
        "fastapi",
        "pydantic>=2",
        "pydantic-settings",
        "structlog",
        "google-generativeai",
        "prometheus-client",
        "opentelemetry-instrumentation-fastapi",
        "python-jose[cryptography]",
        "passlib[bcrypt]",
        "bcrypt==4.0.1",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
        ],
    },
)
