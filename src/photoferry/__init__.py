"""Photoferry - queue-driven transfer of source files into a remote media library."""

__version__ = "0.1.0"
