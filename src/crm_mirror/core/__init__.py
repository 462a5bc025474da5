"""Core infrastructure: database engine, errors, logging and the run lock."""
