"""
Seed script for subscription plans.
Creates or updates the Basic, Standard and Premium per-device plans.
"""
import os
from decimal import Decimal

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from smartpark import models
from smartpark.database import Base
from smartpark.plans import price_for_cycle, yearly_discount_percent

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./smartpark.db")
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

USD_TO_INR_RATE = Decimal(os.getenv("SEED_USD_TO_INR_RATE", "83.00"))

PLANS = [
    {
        "name": "Basic",
        "description": "Single-site monitoring for small parking operators.",
        "base_price_per_month": Decimal("10.00"),
        "base_price_per_quarter": Decimal("27.00"),
        "base_price_per_year": Decimal("100.00"),
        "price_per_node_per_month": Decimal("1.50"),
        "price_per_node_per_quarter": Decimal("4.00"),
        "price_per_node_per_year": Decimal("15.00"),
        "max_gateways": 2,
        "max_parking_lots": 1,
        "max_floors": 3,
        "max_parking_slots": 100,
        "max_users": 3,
        "features": [
            "Real-time parking slot monitoring",
            "IoT sensor management",
            "Mobile app access",
        ],
        "sort_order": 1,
        "is_popular": False,
    },
    {
        "name": "Standard",
        "description": "Multi-level parking with analytics for growing operators.",
        "base_price_per_month": Decimal("25.00"),
        "base_price_per_quarter": Decimal("70.00"),
        "base_price_per_year": Decimal("250.00"),
        "price_per_node_per_month": Decimal("1.50"),
        "price_per_node_per_quarter": Decimal("4.00"),
        "price_per_node_per_year": Decimal("15.00"),
        "max_gateways": 10,
        "max_parking_lots": 5,
        "max_floors": 25,
        "max_parking_slots": 1000,
        "max_users": 15,
        "features": [
            "Real-time parking slot monitoring",
            "IoT sensor management",
            "Gateway configuration",
            "Multi-level parking support",
            "Analytics dashboard",
            "Email notifications",
        ],
        "sort_order": 2,
        "is_popular": True,
    },
    {
        "name": "Premium",
        "description": "Unlimited-scale deployments with API access and priority support.",
        "base_price_per_month": Decimal("60.00"),
        "base_price_per_quarter": Decimal("170.00"),
        "base_price_per_year": Decimal("600.00"),
        "price_per_node_per_month": Decimal("1.25"),
        "price_per_node_per_quarter": Decimal("3.50"),
        "price_per_node_per_year": Decimal("12.50"),
        "max_gateways": 100,
        "max_parking_lots": 500,
        "max_floors": 5000,
        "max_parking_slots": 100000,
        "max_users": 1000,
        "features": [
            "Real-time parking slot monitoring",
            "IoT sensor management",
            "Gateway configuration",
            "Multi-level parking support",
            "User management",
            "Analytics dashboard",
            "Email notifications",
            "API access",
            "24/7 support",
        ],
        "sort_order": 3,
        "is_popular": False,
    },
]


def seed():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        for definition in PLANS:
            plan = db.query(models.SubscriptionPlan).filter(
                models.SubscriptionPlan.name == definition["name"]
            ).first()
            if plan:
                action = "Updated"
            else:
                plan = models.SubscriptionPlan(name=definition["name"])
                db.add(plan)
                action = "Created"

            for field, value in definition.items():
                setattr(plan, field, value)
            plan.usd_to_inr_rate = USD_TO_INR_RATE
            plan.default_billing_cycle = models.BillingCycle.MONTHLY
            plan.is_active = True
            plan.is_deleted = False
            plan.deleted_at = None

            print(
                f"✓ {action} plan {plan.name}: "
                f"${price_for_cycle(plan, models.BillingCycle.MONTHLY)}/month base, "
                f"${plan.price_per_node_per_month}/device/month, "
                f"{yearly_discount_percent(plan)}% off yearly"
            )
        db.commit()
        print("✓ Subscription plans seeded successfully.")
    except Exception as exc:
        db.rollback()
        print(f"⚠ Seeding failed: {exc}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed()
