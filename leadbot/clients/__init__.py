"""
Clients for the CRM, the AI decision service and the Meta Conversions API.
"""
