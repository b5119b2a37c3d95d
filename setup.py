"""
ALCMS - card keys, VIP memberships and points backend
"""

from setuptools import setup, find_namespace_packages

setup(
    name="alcms",
    version="1.0.0",
    description="Card key redemption, VIP membership and points backend",
    author="ALCMS",
    python_requires=">=3.11",
    packages=find_namespace_packages(include=["cms_api*", "shared*", "worker*"]),
    install_requires=[
        "fastapi>=0.104.0",
        "uvicorn[standard]>=0.24.0",
        "sqlalchemy[asyncio]>=2.0.0",
        "asyncpg>=0.29.0",
        "redis>=5.0.1",
        "python-dotenv>=1.0.0",
        "pydantic>=2.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "aiosqlite>=0.19.0",
            "httpx>=0.25.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "alcms-api=cms_api.main:main",
            "alcms-worker=worker.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3.11",
    ],
)
