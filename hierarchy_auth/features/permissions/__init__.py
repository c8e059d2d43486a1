"""
Permission resolution feature module.

Implements scope-qualified Role-Based Access Control (RBAC) evaluated against
positions in the organization hierarchy.
"""
