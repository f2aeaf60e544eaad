"""Storage, caching and text helpers used by the client core."""
