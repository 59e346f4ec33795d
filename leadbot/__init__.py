"""
leadbot: CRM webhook handler that drives lead status changes through an AI
decision service and reports ad conversions, processing each message and
each conversion at most once.
"""

__version__ = "1.0.0"
