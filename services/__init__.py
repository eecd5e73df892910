"""Clients for the chain, the transaction engine and notification channels."""
