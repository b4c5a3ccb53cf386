"""Operator command-line interface for the billing ledger."""
