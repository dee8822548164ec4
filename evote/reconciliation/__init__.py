"""Background worker that repairs denormalized vote counters from the ballot ledger."""
