#!/usr/bin/env python3
"""
Setup script for the Weather Data Pipeline.

    pip install -e .            # pipeline, API and CLI
    pip install -e .[test]      # plus the test runner
"""

from setuptools import setup, find_packages

setup(
    name='weather-pipeline',
    version='1.0.0',
    description='Ingestion and yearly aggregation of historical daily weather readings',
    python_requires='>=3.8',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    install_requires=[
        'SQLAlchemy>=2.0',
        'flask>=2.2',
        'flask-restx>=1.1',
        'flask-cors>=3.0',
        'prometheus-client>=0.16',
        'requests>=2.28',
    ],
    extras_require={
        'postgres': ['psycopg2-binary>=2.9'],
        'test': ['pytest>=7.0'],
    },
    entry_points={
        'console_scripts': [
            'weather-pipeline=weather_pipeline.main:main',
        ],
    },
)
