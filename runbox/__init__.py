"""
runbox - run and preview files from isolated workspaces.
"""

__version__ = "0.1.0"
