"""
PulseKeeper - Source Package

Allowance accounting and redemption engine for a dead-man's switch:
when a user misses their check-in deadline, whatever their grants allow
this period is sent to their backup recipients.

DESIGN PRINCIPLES:
1. Never redeem more than a grant's cap in one period
2. Fail per asset, per user; never per batch
3. Expected failures are results, not exceptions
4. Every fund movement is auditable
5. Storage layer is swappable
"""

__version__ = "0.1.0"
__author__ = "PulseKeeper Team"
