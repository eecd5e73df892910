"""Contract selection, bid assessment and batched bid submission."""
