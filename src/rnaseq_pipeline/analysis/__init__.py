"""
Statistical analyses run on the count matrix.
"""
