"""
Utility Functions
=================
Schema validation helpers.
"""
