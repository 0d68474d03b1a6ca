"""
Core package for shared utilities.

Configuration, structured logging, the error taxonomy and token
verification used across the fulfillment engine.
"""
