"""Job model, store, scheduling and persistence."""
