# leadbot/schemas/__init__.py
"""
Pydantic request/response models and canonical event records.
"""
