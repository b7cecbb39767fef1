"""Application modules.

- auth: Bearer token verification
- billing: Plans, usage limits, Stripe checkout and webhooks
"""
