"""
Setup script for varc-analytics.

VARC Analytics turns completed practice sessions into a durable per-user
skill model:

1. Session analysis - surface statistics per reasoning skill, genre and question type
2. Proficiency engine - confidence-weighted updates of user_metric_proficiency
3. Personalisation signals - weak topics, skill scores and recommended difficulty

The 'varc-analytics' command is the entry point; the HTTP API is served
from varc_analytics.api.main:app.
"""

from setuptools import find_packages, setup

setup(
    name="varc-analytics",
    version="1.0.0",
    description="Session analytics and proficiency engine for VARC practice",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["config"],
    package_data={"varc_analytics.taxonomy": ["data/*.json"]},
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=[
        # CLI
        "typer>=0.9.0",
        "rich>=13.0.0",
        # Database
        "sqlalchemy[asyncio]>=2.0.0",
        "asyncpg>=0.29.0",
        # Config & Validation
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        # HTTP
        "httpx>=0.25.0",
        "fastapi>=0.110.0",
        "uvicorn>=0.27.0",
        # AI
        "google-generativeai>=0.5.0",
        # Logging
        "loguru>=0.7.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
            "ruff>=0.1.0",
            "mypy>=1.0.0",
            "aiosqlite>=0.19.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "varc-analytics=varc_analytics.cli.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "Intended Audience :: Education",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Education",
    ],
    keywords="analytics proficiency adaptive-learning education",
)
