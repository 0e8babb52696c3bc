"""
Hamorah - Scripture study companion.

This package holds the model lifecycle and inference provider engine used by
the host application. See hamorah.ai for the public entry points.
"""

__version__ = "0.1.0"
