"""
Tenant Pricing Package

A multi-tenant pricing and billing computation layer.
Resolves Scope → Pricing Model → Overrides → Rules, then records the
result as a billing item inside a billing cycle with a reversible audit trail.
"""

__version__ = "1.0.0"
