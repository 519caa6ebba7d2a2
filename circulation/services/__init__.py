"""Outbound integrations used by the circulation engine.

- Notification sender (e-mail over SMTP, optional JSON webhook over httpx)
"""
