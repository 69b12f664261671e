"""
HTTP API for the decision loop.
"""
