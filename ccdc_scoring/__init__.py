"""CCDC red-vs-blue service scoring engine."""

__version__ = "1.0.0"
