"""
Rate limiting package for the gateway.

Holds the token-bucket implementation and the named presets that bound
outbound request throughput with burst tolerance.
"""
