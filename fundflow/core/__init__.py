"""Core domain logic: configuration, roles and the approval workflow."""
