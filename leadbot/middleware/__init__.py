"""
HTTP middleware: request ids and access logging.
"""
