"""Role-based access control -- roles, permissions, assignments and audit.

Provides SQLAlchemy models for the RBAC tables, the default permission
catalogue seeded into new organizations, RBACRepository for async CRUD,
and RBACService for permission checks with role inheritance.
"""
