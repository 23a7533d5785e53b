"""Services for pricing models, scopes, overrides, billing and audit."""
