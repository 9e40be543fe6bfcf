"""
Stream service adapters.
"""
