"""
Exam catalog, attempt gate and attempt lifecycle.
"""
