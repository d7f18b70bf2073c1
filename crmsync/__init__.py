"""
crmsync - AmoCRM / LPTracker webhook automation
"""

__version__ = "1.0.0"
