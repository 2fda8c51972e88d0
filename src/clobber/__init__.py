"""Clobber: policy list distribution and enforcement for Matrix rooms."""

__version__ = "0.1.0"
