"""
Load-generation loops for the stream benchmark.
"""
