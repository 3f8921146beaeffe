"""
Entitlement resolution.

Turns the stored access record into an allow/deny answer and owns every
write to it: grant merges, revocations, admin overrides and attempt
bookkeeping all go through ``EntitlementResolver.update_record``.
"""
