"""
Gantry: Continuous-integration pipeline execution with composite build results.

A runtime that sequences build stages on a provisioned agent, enforces
nested timeouts, isolates stage failures, and dispatches post-build actions
keyed on the aggregate result.
"""

__version__ = "0.1.0"
