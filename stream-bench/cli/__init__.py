"""
Benchmark commands.
"""
