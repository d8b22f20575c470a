"""Maintain a fork as layered patch sets on top of an upstream repository."""

__version__ = "0.1.0"
