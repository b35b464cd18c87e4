#!/usr/bin/env python3
"""Setup configuration for stage-timer package."""

from setuptools import setup, find_packages
from pathlib import Path

# Read long description from README
readme_path = Path(__file__).parent / "README.md"
long_description = readme_path.read_text() if readme_path.exists() else ""

setup(
    name="stage-timer",
    version="1.0.0",
    description="Shared stage countdown kept consistent across drifting viewer clocks",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="MIT",
    
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    
    python_requires=">=3.9",
    
    install_requires=[
        "numpy>=1.20.0",
        "toml>=0.10.0",
    ],
    
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=3.0.0",
        ],
    },
    
    entry_points={
        "console_scripts": [
            "stage-timer=stage_timer.main:main",
        ],
    },
    
    classifiers=[
        "Development Status :: 4 - Beta",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Multimedia",
        "Topic :: System :: Networking :: Time Synchronization",
    ],
    
    keywords="countdown timer stage clock synchronization offset sse",
)
