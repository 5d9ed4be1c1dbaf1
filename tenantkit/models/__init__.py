"""Domain entities and use case input schemas."""
