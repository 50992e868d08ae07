"""
Alert Engine - deduplication, correlation, routing and escalation of alerts
"""
__version__ = "1.0.0"
