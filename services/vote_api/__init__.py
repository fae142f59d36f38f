"""Vote purchase API: tally, ledger, payment gateway adapter and orchestration."""
