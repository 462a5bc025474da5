"""CRM mirror -- two-way synchronization between a remote CRM and a local database.

Mirrors remote modules into generated tables, captures local edits with
database triggers and pushes them back in batches.
"""
