"""
Core modules for Invocation Audit.

This package contains the metric catalog, usage aggregation, cost reporting,
log delivery and log correlation used to audit batches of invocations.
"""
