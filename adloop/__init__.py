"""
adloop - automated decision and execution loop for advertising entities.
"""
