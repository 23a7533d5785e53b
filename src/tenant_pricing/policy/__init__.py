"""Scope precedence policy."""
