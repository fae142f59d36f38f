"""Reconciliation worker for pending vote transactions."""
