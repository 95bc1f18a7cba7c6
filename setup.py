"""Setup configuration for triggerctl."""

from setuptools import setup, find_packages

setup(
    name="triggerctl",
    version="1.0.0",
    description="Trigger downstream jobs, wait for their results and retry failed runs",
    author="Your Name",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
        ],
    },
    entry_points={
        "console_scripts": [
            "triggerctl=triggerctl.cli:cli",
        ],
    },
    python_requires=">=3.8",
)
