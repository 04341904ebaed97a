"""pprog - a coding agent that edits, runs and checks your project."""

__version__ = "0.1.0"
