# Berth Stream Setup

from setuptools import setup, find_packages

setup(
    name="berth-stream",
    version="1.0.0",
    packages=find_packages(include=["berth_stream", "berth_stream.*"]),
    install_requires=[
        "websockets>=12.0",
        "httpx>=0.27.0",
        "redis>=5.0.0",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "prometheus-client>=0.19.0",
        "rich>=13.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "berth-stream=berth_stream.main:main",
        ],
    },
    python_requires=">=3.11",
)
