"""
AutoDub — setuptools build script.

Usage:
    # Development (editable install):
    pip install -e .

    # Run the CLI:
    autodub run https://example.com/video.mp4
"""

from setuptools import setup, find_namespace_packages

APP_NAME = "autodub"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Chunked video dubbing pipeline",
    packages=find_namespace_packages(include=["autodub", "autodub.*"]),
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "autodub=main:main",
        ],
    },
)
