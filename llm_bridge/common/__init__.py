"""
Shared utilities: errors, timing, sanitization, ids, system-message handling.
"""
