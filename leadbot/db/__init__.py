"""
Database engine, session management and declarative base.
"""
