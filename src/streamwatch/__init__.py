"""
streamwatch - live stream status monitor.

Watches followed channels on several streaming platforms and publishes one
normalized event per detected transition onto a Redis pub/sub bus.
"""

__version__ = "0.1.0"
