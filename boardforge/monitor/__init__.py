"""boardforge run monitor — read-only projection over the Run Ledger.

Modules
-------
projection
    ``RunProjection`` reads the ledger and produces ``RunSnapshot``
    Pydantic models.
renderer
    ``RunRenderer`` turns a ``RunResult`` or a ``RunSnapshot`` into
    Rich renderables.
"""
