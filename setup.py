"""
TaskHub setup.py — Package configuration and CLI entry point.
"""

from setuptools import find_packages, setup

setup(
    name="taskhub",
    version="1.0.0",
    description="TaskHub — Task management API with access-controlled documents and live updates",
    packages=find_packages(include=["taskhub", "taskhub.*"]),
    python_requires=">=3.11",
    entry_points={
        "console_scripts": [
            "taskhub=taskhub.cli:main",
        ],
    },
    install_requires=[
        "sqlalchemy>=2.0",
        "psycopg2-binary>=2.9",
        "pydantic>=2.5",
        "redis>=5.0",
        "bcrypt>=4.1",
        "pyyaml>=6.0",
        "fastapi>=0.110",
        "uvicorn>=0.29",
        "python-multipart>=0.0.9",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "httpx>=0.27",
        ],
    },
)
