"""Chain state polling, scheduling and polling metrics."""
