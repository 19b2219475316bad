"""Core ledger logic: authorization, entitlements, settlements, payouts and audit."""
