"""
Invocation Audit.

Log correlation and cost accounting for asynchronously executed functions.
"""

__version__ = "0.1.0"
