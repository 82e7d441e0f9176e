"""
YTScribe — setuptools build script.

Usage:
    pip install -e .            # runtime
    pip install -e ".[test]"    # plus the test client dependency

    ytscribe-server             # start the HTTP service
"""

from setuptools import setup, find_packages

setup(
    name="ytscribe",
    version="1.0.0",
    description="Video URL to timestamped transcript service with transcript-grounded chat",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
        "fastapi>=0.110",
        "pydantic>=2.0",
        "uvicorn>=0.27",
    ],
    extras_require={
        "test": [
            "httpx>=0.27",
        ],
    },
    entry_points={
        "console_scripts": [
            "ytscribe-server=main:main",
        ],
    },
    python_requires=">=3.10",
)
