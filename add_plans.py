#!/usr/bin/env python3
"""初期プラン (Free / Pro / Premium) を投入するスクリプト"""
from billing_events.core.database import SessionLocal, create_tables
from billing_events.core.logging import setup_logging, get_logger
from billing_events.services.subscription_service import list_plans, seed_default_plans

setup_logging(service="add_plans")
logger = get_logger("add_plans")


def main():
    create_tables()
    db = SessionLocal()
    try:
        added = seed_default_plans(db)
        if not added:
            logger.info("プランは既に存在するためスキップ")
        for plan in list_plans(db):
            print(f"{plan.id}\t{plan.name}\t{plan.price} {plan.currency}/{plan.interval}\t{plan.stripe_price_id}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
