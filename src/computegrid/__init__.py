"""
computegrid - volunteer compute grid with redundant dispatch, consensus
verification and node reputation.
"""

from computegrid.version import __version__

__all__ = ["__version__"]
