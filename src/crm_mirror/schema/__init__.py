"""Schema management -- type mapping and minimal DDL for mirror tables.

Provides:
- map_type(): remote field type tag -> ColumnSpec
- TableDiffService: Alembic-based create/alter of a single table
- SchemaSynchronizer: module metadata -> mirror table, trigger reprovisioning
"""
