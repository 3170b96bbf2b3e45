#!/usr/bin/env python3
from setuptools import setup, find_packages

setup(
    name="openadjoint",
    version="0.1.0",
    description="Differentiable elasticity simulation and adjoint-based shape, material and topology optimization",
    author="OpenAdjoint Team",
    package_dir={"": "src"},
    packages=find_packages("src"),
    include_package_data=True,
    python_requires=">=3.9",
    install_requires=[
        "numpy>=1.22.0",
        "scipy>=1.8.0",
        "jax>=0.4.1",
        "jaxlib>=0.4.1",
        "meshio>=5.0.0",
        "matplotlib>=3.4.0",
        "pandas>=1.3.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "dev": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "openadjoint=openadjoint.cli.app:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Scientific/Engineering",
    ],
)
