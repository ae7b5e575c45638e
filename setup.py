"""
Setup file for Portfolio Engine package.
Allows installation in editable mode: pip install -e .
"""

from setuptools import setup, find_packages

setup(
    name="portfolio_engine",
    version="0.1.0",
    description="Portfolio construction engine: convex reformulation, solver dispatch, backtests and frontiers",
    packages=find_packages(include=["portfolio_engine", "portfolio_engine.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pandas",
        "numpy",
        "scipy",
        "pyarrow",
        "pyyaml",
        "python-dotenv",
        "cvxpy",
        "clarabel",
        "osqp",
        "joblib",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
)
