"""Alert evaluation, lifecycle and domain events."""
