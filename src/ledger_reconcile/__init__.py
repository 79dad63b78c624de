"""
Bank statement → Reconciliation ledger → Matched invoices, subscriptions and charges

A deterministic, testable engine that imports a period's bank statement as a
batch, matches each line against financial documents (automatically through
keyword rules or manually, single or split), and folds reconciled lines into
payment histories with VAT decomposition.
"""

__version__ = "0.1.0"
