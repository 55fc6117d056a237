"""HTTP calling layer for the ticket workflow."""
