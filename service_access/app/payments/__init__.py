"""
Payment provider webhooks: payload normalization, provider verification and
conversion into access grants.
"""
