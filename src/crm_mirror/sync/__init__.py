"""Synchronization pipeline -- pull, push and the run orchestrator.

Provides PullEngine (remote deltas -> mirror table), PushEngine (shadow
tables -> remote service), CheckpointStore (resumable pull cursors) and
SyncRunner (per-module schema sync, pull and push).
"""
