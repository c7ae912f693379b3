"""Service layer orchestrating storage operations."""
