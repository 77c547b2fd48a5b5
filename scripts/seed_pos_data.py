"""
Seed script: ventas POS y costos de ejemplo para un tenant.

What it creates:
- Ventas POS (por defecto 30) con la misma forma del reporte por sucursal
  del proveedor; algunas sin id para ejercitar la llave sintetizada.
- Costos (por defecto 10) con líneas, listos para convertir en factura.

Run inside the API container:
    docker compose exec api python scripts/seed_pos_data.py --tenant 3f1c... --sales 30 --costs 10

Note: This is intended for development environments only.
"""

# Add project root (/code) to sys.path so `app.*` imports work even if CWD changes
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import argparse
import random
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID, uuid4

from app.database.database import SessionLocal
from app.modules.costs.models import Cost, CostLine
from app.modules.pos.schemas import BranchReport
from app.modules.pos.service import POSSyncService

MENU = [
    ("CAF-01", "Café Americano Grande", 3500),
    ("CAF-02", "Cappuccino", 3900),
    ("CAF-03", "Latte Vainilla", 4200),
    ("PAN-01", "Croissant", 1500),
    ("PAN-02", "Medialuna", 1200),
    ("PAS-01", "Cheesecake", 3800),
]

VENDORS = [
    ("76795561-8", "Tostaduría del Sur SpA", "Café en grano"),
    ("12345678-5", "Lácteos Don Pedro", "Leche y crema"),
]


def pick(seq):
    return random.choice(seq)


def build_sales(count: int, serial: str):
    sales = []
    start = datetime.now(timezone.utc) - timedelta(days=7)
    for n in range(count):
        items = []
        for _ in range(random.randint(1, 3)):
            code, name, price = pick(MENU)
            items.append({"code": code, "name": name, "quantity": random.randint(1, 2), "price": price})
        sale_amount = sum(i["price"] * i["quantity"] for i in items)
        tip = random.choice([0, 0, 500, 1000])
        sales.append({
            # Una de cada cinco ventas llega sin id, como en el proveedor real
            "id": None if n % 5 == 0 else f"TUU-{uuid4().hex[:10]}",
            "sequenceNumber": f"SEQ{n:04d}",
            "serialNumber": serial,
            "transactionDateTime": (start + timedelta(minutes=37 * n)).isoformat(),
            "saleAmount": sale_amount,
            "tipAmount": tip,
            "totalAmount": sale_amount + tip,
            "status": "completed",
            "transactionType": "SALE",
            "items": items,
        })
    return sales


def create_costs(db, tenant_id: UUID, count: int) -> int:
    for n in range(count):
        tax_id, vendor, item = pick(VENDORS)
        net = random.randint(5, 60) * 1000
        cost = Cost(
            tenant_id=tenant_id,
            vendor_name=vendor,
            vendor_tax_id=tax_id,
            doc_type="FACTURA",
            doc_number=str(1000 + n),
            date=date.today() - timedelta(days=n),
            total=Decimal(net) * Decimal("1.19"),
            description=item,
        )
        cost.lines.append(CostLine(description=item, quantity=1, unit_cost=Decimal(net), total_cost=Decimal(net)))
        cost.lines.append(CostLine(description="IVA", quantity=1, unit_cost=Decimal(net) * Decimal("0.19"),
                                   total_cost=Decimal(net) * Decimal("0.19")))
        db.add(cost)
    db.commit()
    return count


def main():
    parser = argparse.ArgumentParser(description="Seed POS sales and costs")
    parser.add_argument("--tenant", required=True, help="UUID del tenant (X-Company-ID)")
    parser.add_argument("--sales", type=int, default=30)
    parser.add_argument("--costs", type=int, default=10)
    parser.add_argument("--serial", default="POS001")
    args = parser.parse_args()

    tenant_id = UUID(args.tenant)
    db = SessionLocal()
    try:
        print("Creating POS sales...")
        report = [BranchReport(location={"id": "LOC-1", "address": "Av. Providencia 1234"},
                               sales=build_sales(args.sales, args.serial))]
        result = POSSyncService(db).ingest_branch_report(tenant_id, report)
        print(f"Sales created: {result.created}, existing: {result.existing}, errors: {len(result.errors)}")

        print("Creating costs...")
        print(f"Costs created: {create_costs(db, tenant_id, args.costs)}")

        print("\nSeed completed.")
        print("Headers for API requests:")
        print(f"  X-Company-ID: {tenant_id}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
