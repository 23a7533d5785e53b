"""Rule row validation for seed catalogs."""
