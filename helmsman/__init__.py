"""
.. include:: ../README.md
"""

__version__ = "4.0.0"

__all__ = [
    "state",
    "loader",
    "validate",
    "chart",
    "observer",
    "decision",
    "plan",
    "release_ops",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
