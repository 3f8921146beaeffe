"""
Access record schema.

One AccessRecord exists per (user, exam category). Grants are kept as a
history of evidence entries so a later grant never erases an earlier one.
"""
