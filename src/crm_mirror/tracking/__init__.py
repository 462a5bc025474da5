"""Change capture: shadow tables, per-dialect triggers and the shadow repository."""
