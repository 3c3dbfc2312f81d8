"""
Payment provider integration (Stripe-compatible REST API).

Checkout and billing-portal sessions are created on demand; the provider reports
subscription lifecycle changes back through the signed webhook.
"""
