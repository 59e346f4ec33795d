"""
Domain services: webhook parsing, deduplication, conversions and the message pipeline.
"""
