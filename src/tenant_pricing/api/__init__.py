"""HTTP API for pricing and billing."""
