"""
HTTP clients for external model providers.
"""
