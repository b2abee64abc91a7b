"""Agent execution engine for answering questions over chat logs."""

__version__ = "0.1.0"
