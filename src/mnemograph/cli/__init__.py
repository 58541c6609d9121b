"""
MnemoGraph CLI - maintenance commands for a memory graph database.
"""

from .main import cli
