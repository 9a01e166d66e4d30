"""
Service layer for Update Audit Core.

Import services from their modules, e.g.
``from update_audit.services.reconciler import ReconciliationEngine``.
"""
