#!/usr/bin/env python
"""
Seed pipeline - creates the schema and loads the seed catalog for a tenant.

Usage:
    python scripts/seed_data.py TENANT_ID [--dir seed/]
"""
import argparse
import sys
from pathlib import Path

# Add src to path
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))

from tenant_pricing.config import configure_logging, get_settings
from tenant_pricing.data.seed_catalog import seed_from_settings
from tenant_pricing.errors import PricingError
from tenant_pricing.services.container import PricingServices


def main():
    parser = argparse.ArgumentParser(description="Load the pricing seed catalog for a tenant")
    parser.add_argument("tenant_id")
    parser.add_argument("--dir", type=Path, default=None, help="Seed directory (default: TENANT_PRICING_SEED_DIR)")
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings.log_level, json=False)

    services = PricingServices.build(settings)
    services.db.init_db()

    directory = args.dir or settings.seed_dir
    print("=" * 60)
    print(f"SEEDING TENANT {args.tenant_id} FROM {directory}")
    print("=" * 60)

    try:
        report = seed_from_settings(services, args.tenant_id, args.dir)
    except (PricingError, FileNotFoundError) as e:
        print(f"\n❌ SEED FAILED: {e}")
        for error in getattr(e, 'details', {}).get('errors', []):
            print(f"  ERROR: {error}")
        sys.exit(1)
    finally:
        services.db.dispose()

    print()
    print("✅ SEED COMPLETE")
    for name, count in report["metrics"].items():
        print(f"  {name}: {count}")


if __name__ == "__main__":
    main()
