"""
shardctl - command line client of the shardkeeper control plane.
"""

__version__ = "0.1.0"

from . import cli, api

__all__ = ["cli", "api"]
