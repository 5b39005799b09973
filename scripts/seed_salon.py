#!/usr/bin/env python3
"""Seed the database with a demo salon, its professionals, schedules and services."""
import sys
from datetime import time
from pathlib import Path

# Add the parent directory to the path so we can import the package
sys.path.insert(0, str(Path(__file__).parent.parent))

from salonsched import create_app
from salonsched.extensions import db
from salonsched.models import Client, Salon, Schedule, Service, Staff

SERVICES = [
    {"name": "Haircut", "price_cents": 3500, "duration_minutes": 30},  # $35.00
    {"name": "Hair Coloring", "price_cents": 9000, "duration_minutes": 90},  # $90.00
    {"name": "Manicure", "price_cents": 2500, "duration_minutes": 45},  # $25.00
    {"name": "Beard Trim", "price_cents": 1500, "duration_minutes": 20},  # $15.00
]

PROFESSIONALS = [
    {"name": "Ana Souza", "title": "Senior Stylist"},
    {"name": "Marco Lima", "title": "Barber"},
]


def seed_salon():
    """Create one salon with Mon-Sat hours and a lunch break."""
    app = create_app()

    with app.app_context():
        db.create_all()

        if Salon.query.filter_by(name="Demo Salon").first():
            print("ℹ️  Demo Salon already exists, nothing to do")
            return

        salon = Salon(name="Demo Salon", address="123 Main St", phone="+15550100")
        db.session.add(salon)
        db.session.flush()

        for service in SERVICES:
            db.session.add(Service(salon_id=salon.salon_id, **service))

        for professional in PROFESSIONALS:
            staff = Staff(salon_id=salon.salon_id, **professional)
            db.session.add(staff)
            db.session.flush()
            for weekday in range(6):  # Monday to Saturday
                db.session.add(
                    Schedule(
                        staff_id=staff.staff_id,
                        day_of_week=weekday,
                        start_time=time(9, 0),
                        end_time=time(18, 0) if weekday < 5 else time(14, 0),
                        break_start=time(12, 0) if weekday < 5 else None,
                        break_end=time(13, 0) if weekday < 5 else None,
                    )
                )

        db.session.add(Client(salon_id=salon.salon_id, name="Test Client", phone="+15550123"))
        db.session.commit()
        print(f"✅ Seeded salon {salon.salon_id} with {len(PROFESSIONALS)} professionals and {len(SERVICES)} services")


if __name__ == "__main__":
    seed_salon()
