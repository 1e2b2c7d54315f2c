"""Setup script for Commerce Sync."""

from setuptools import setup, find_packages

setup(
    name="commerce_sync",
    version="0.1.0",
    description="Payment-event reconciliation and multi-marketplace synchronization service",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["commerce_sync", "commerce_sync.*"]),
    package_data={"commerce_sync.database": ["migrations/*.py", "migrations/versions/*.py"]},
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-mock>=3.11.0",
            "aiosqlite>=0.19.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "commerce-sync-api=commerce_sync.api.main:main",
            "commerce-sync-worker=commerce_sync.workers.sync_worker:main",
            "commerce-sync-outbox=commerce_sync.workers.outbox_publisher:main",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
