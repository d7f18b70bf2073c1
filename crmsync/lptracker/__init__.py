"""
LPTracker integration module
"""
