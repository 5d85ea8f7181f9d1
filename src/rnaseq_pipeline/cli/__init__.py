"""
Command-line interface for the RNA-seq Pipeline.
"""
