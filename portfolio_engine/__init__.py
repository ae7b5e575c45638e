"""
Portfolio Construction Engine

Turns a declarative portfolio specification (asset universe, linear
constraints, return/risk objectives) into a convex program, solves it with a
pluggable cvxpy backend, and re-solves it over rolling windows or swept
return targets.
"""

__version__ = "0.1.0"
