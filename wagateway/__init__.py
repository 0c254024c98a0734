"""
Multi-tenant WhatsApp gateway.

Runs one protocol session per tenant on top of Evolution API and forwards
each tenant's events to its webhook.
"""

__version__ = "0.1.0"
