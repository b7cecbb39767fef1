"""Productivity app billing backend.

Subscription and usage metering for the productivity web application: which
plan each user is on, usage limits on metered actions, and Stripe
subscription state kept in sync through webhooks.

Modules:
    - core: Configuration, database, logging and middleware
    - modules.auth: Verification of auth provider tokens
    - modules.billing: Plans, usage metering and Stripe reconciliation
"""

__version__ = "0.1.0"
