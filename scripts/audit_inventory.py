#!/usr/bin/env python3
"""Report stock counters that drifted from the inventory ledger, optionally fixing them."""
import argparse
import sys

from shared import SessionLocal
from services.ledger.inventory import reconcile_all_inventory, update_inventory_to_calculated


def audit_inventory(supplier=None, apply=False):
    db = SessionLocal()
    try:
        print("🔎 Auditing inventory against the ledger...")
        summary = reconcile_all_inventory(db, supplier)

        for result in summary['results']:
            if result['difference'] == 0:
                continue
            print(
                f"  • {result['productName']}: stock {result['currentStock']}, "
                f"ledger {result['calculatedStock']} ({result['difference']:+d})"
            )
            if apply:
                update_inventory_to_calculated(db, result['productId'], result['calculatedStock'])

        print(
            f"✅ {summary['processed']} products checked, {summary['discrepancies']} with drift, "
            f"{summary['errors']} errors"
        )
        if apply and summary['discrepancies']:
            print("   Stock counters reset to the ledger totals.")
        return summary
    finally:
        db.close()


if __name__ == "__main__":
    from dotenv import load_dotenv
    load_dotenv()

    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--supplier", help="only audit products from this supplier")
    parser.add_argument("--apply", action="store_true", help="reset drifted counters to the ledger total")
    args = parser.parse_args()

    if args.apply:
        confirm = input("⚠️  This will overwrite stock counters with ledger totals. Continue? (yes/no): ")
        if confirm.lower() != "yes":
            print("❌ Cancelled.")
            sys.exit(0)

    audit_inventory(args.supplier, args.apply)
