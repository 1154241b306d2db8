"""
Command line interface for the stream monitor.
"""
