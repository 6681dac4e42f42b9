"""
Setup script for dmlkit.
"""

from setuptools import setup, find_packages

setup(
    name="dmlkit",
    version="0.1.0",
    description="Double/debiased machine learning with repeated cross-fitting and nuisance-learner ensembles",
    author="dmlkit contributors",
    packages=find_packages(exclude=["tests", "tests.*", "examples"]),
    install_requires=[
        "numpy>=1.24.0",
        "pandas>=2.0.0",
        "scipy>=1.10.0",
        "scikit-learn>=1.9.0",
        "catboost>=1.2",
        "formulaic>=1.0.0",
        "joblib>=1.3.0",
        "tqdm>=4.60.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Scientific/Engineering",
    ],
    python_requires=">=3.10",
)
