"""
Subscription plans and per-user subscriptions.

- Plans are admin-managed; a plan lists the feature flag keys it unlocks.
- A user has at most one current subscription (latest non-canceled row).
- Paid plans go through the payment provider checkout; free plans activate directly.
"""
