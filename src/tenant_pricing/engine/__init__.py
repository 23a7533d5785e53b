"""Engine subpackage - pricing models, rule matching and price calculation."""
