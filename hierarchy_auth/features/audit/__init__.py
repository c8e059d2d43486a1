"""
Audit trail for hierarchy changes.
"""
