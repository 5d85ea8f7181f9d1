#!/usr/bin/env python3
"""
Setup script for the RNA-seq Pipeline.
"""

from setuptools import setup, find_packages

if __name__ == "__main__":
    setup(
        name="rnaseq-pipeline",
        version="1.0.0",
        description="Bulk RNA-seq pipeline from FASTQ files to differential expression, enrichment, co-expression and splicing",
        author="Bioinformatics Team",
        author_email="team@example.com",
        packages=find_packages(where="src"),
        package_dir={"": "src"},
        package_data={"rnaseq_pipeline": ["r_scripts/*.R"]},
        include_package_data=True,
        python_requires=">=3.10",
        install_requires=[
            "numpy>=1.26.0",
            "pandas>=2.1.0",
            "requests>=2.31.0",
            "pydantic>=2.5.0",
            "pydantic-settings>=2.7.0",
            "structlog>=23.2.0",
            "psutil>=5.9.0",
            "click>=8.0.0",
            "rich>=13.0.0",
            "pydeseq2>=0.5.0",
            "gseapy>=1.1.0",
        ],
        extras_require={
            "dev": [
                "pytest>=7.4.0",
                "pytest-cov>=4.1.0",
                "pytest-mock>=3.12.0",
                "black>=23.11.0",
                "flake8>=6.1.0",
                "mypy>=1.7.0",
                "memory-profiler>=0.61.0",
            ],
            "docs": [
                "sphinx>=7.2.0",
                "sphinx-rtd-theme>=1.3.0",
            ],
        },
        entry_points={
            "console_scripts": [
                "rnaseq-pipeline=rnaseq_pipeline.cli.main:main",
            ],
        },
        classifiers=[
            "Development Status :: 4 - Beta",
            "Intended Audience :: Science/Research",
            "License :: OSI Approved :: MIT License",
            "Programming Language :: Python :: 3",
            "Programming Language :: Python :: 3.10",
            "Programming Language :: Python :: 3.11",
            "Programming Language :: Python :: 3.12",
            "Topic :: Scientific/Engineering :: Bio-Informatics",
        ],
    )
