"""
CI Exec module.

Click-based CLI that validates and runs JSON job files locally through
the runner engine.
"""
