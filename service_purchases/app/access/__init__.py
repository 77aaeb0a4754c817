"""
Access checks, usage reporting and refunds for existing entitlements.
"""
