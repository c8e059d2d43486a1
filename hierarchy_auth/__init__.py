"""
Hierarchical, path-based authorization for a five-level organization tree.
"""
__version__ = "0.1.0"
