#!/usr/bin/env python3
"""Setup script for the tourbook API: migrate the database and seed a sample catalog."""

import asyncio
import logging
import sys
from datetime import timedelta
from pathlib import Path

# Add the server directory to the Python path
server_dir = Path(__file__).parent.parent / "server"
sys.path.insert(0, str(server_dir))

from alembic import command
from alembic.config import Config
from sqlalchemy import func, select

from tourbook.core.database import async_session_factory, close_db, utcnow
from tourbook.models import AddOn, Departure, Tour

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def run_migrations():
    """Apply Alembic migrations up to head."""
    logger.info("Running database migrations...")

    alembic_cfg = Config(str(server_dir / "db" / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(server_dir / "db" / "alembic"))
    command.upgrade(alembic_cfg, "head")

    logger.info("Database migrations completed")


async def create_sample_data():
    """Create a sample tour with departures and add-ons."""
    logger.info("Creating sample data...")

    async with async_session_factory() as db:
        try:
            existing_tours = await db.execute(select(func.count()).select_from(Tour))
            if existing_tours.scalar_one() > 0:
                logger.info("Sample data already exists, skipping...")
                return

            tour = Tour(
                title="Northern Lights Adventure",
                slug="northern-lights-adventure",
                description="Experience the magical Aurora Borealis in Iceland with expert guides",
                price_amount=129900,  # $1,299.00 per traveler
                price_currency="USD",
            )
            db.add(tour)
            await db.flush()

            add_ons = [
                ("Airport transfer", 4500),
                ("Glacier hike", 18900),
                ("Blue Lagoon entry", 9900),
            ]
            for order, (name, price) in enumerate(add_ons):
                db.add(AddOn(tour_id=tour.id, name=name, price_amount=price, display_order=order))

            base_date = (utcnow() + timedelta(days=30)).replace(hour=9, minute=0, second=0, microsecond=0)
            for i in range(5):
                starts_at = base_date + timedelta(days=i * 7)
                db.add(Departure(
                    tour_id=tour.id,
                    starts_at=starts_at,
                    ends_at=starts_at + timedelta(days=5),
                    available_slots=16,
                    booked_slots=0,
                ))

            await db.commit()
            logger.info("Sample data created successfully!")

        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to create sample data: {e}")
            raise

    await close_db()


def main():
    """Main setup function."""
    logger.info("Starting tourbook API setup...")

    run_migrations()
    asyncio.run(create_sample_data())

    logger.info("Setup completed successfully!")
    logger.info("You can now start the API server with: cd server && uvicorn tourbook.main:app --reload")


if __name__ == "__main__":
    main()
