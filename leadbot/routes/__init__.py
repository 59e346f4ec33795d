"""
HTTP routes: Kommo webhooks, landing-page token visits and health probes.
"""
