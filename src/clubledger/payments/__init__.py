"""Payment processing: processor contract, status ledger, prepayments, webhooks."""
