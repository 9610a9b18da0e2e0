"""
Pipeline module.

Stages and opportunities are mutated optimistically and reconciled against
the clinic API; see `reconciliation.Reconciler` for the rollback protocol.
"""
