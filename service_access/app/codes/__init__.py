"""
Access codes.

Codes are issued by administrators for one exam category and redeemed by
candidates. The use counter is advanced with a conditional write so two
simultaneous redemptions cannot both take the last use.
"""
