"""Sync coordination for healthsync.

Modules:
    orchestrator — Per-provider sync (resolve → fetch → map → replace) and fan-out
    scheduler    — Interval-driven queue of pull jobs run through the orchestrator
"""
