"""
Core modules for codenv usage accounting.

This package contains session log parsing, profile binding, delta
computation, aggregation, pricing and the sync engine.
"""
