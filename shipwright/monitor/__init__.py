"""Run status view — pure read-only projection over the Run Ledger.

Modules
-------
projection
    ``StatusProjection`` reads the ledger and produces ``RunSnapshot``
    Pydantic models: a frozen, point-in-time view of a run.
renderer
    ``StatusRenderer`` turns ``RunSnapshot`` into Rich renderables for
    terminal display, including continuous ``Rich.Live`` mode.
"""
