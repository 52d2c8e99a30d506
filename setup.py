"""Setup configuration for contactqueue."""

from setuptools import setup, find_packages

setup(
    name="contactqueue",
    version="2.0.0",
    description="Queued contact validation processor with retries and CRM write-back",
    author="Your Name",
    packages=find_packages(include=["contactqueue", "contactqueue.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "python-dotenv>=1.0.0",
        "logtail-python>=0.2.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.3",
            "pytest-asyncio>=0.23.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "contactqueue=contactqueue.cli:cli",
        ],
    },
    python_requires=">=3.9",
)
