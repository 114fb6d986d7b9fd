#!/usr/bin/env python3

from setuptools import setup, find_packages

setup(
    name="voice_clipper",
    version="1.0.0",
    description="Rolling per-speaker voice capture with on-demand normalized WAV clips",
    author="Voice Clipper Team",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "numpy>=1.21.0",
        "scipy>=1.7.0",
        "opuslib>=3.0.1",
        "python-dotenv>=0.19.0",
        "nanoid>=2.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    python_requires=">=3.8",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
