"""Bearer-token share links for snippets."""

__version__ = "0.1.0"
