"""
Log Watcher - watches pod logs for a pattern and remediates
"""

__version__ = "1.0.0"
