"""User, organization and membership use cases."""
