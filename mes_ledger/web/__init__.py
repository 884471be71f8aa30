"""HTTP interface for the MES ledger."""
