# populate_tiers.py - Run this once to seed membership tiers and bookable resources
from clubhouse.database import Base, SessionLocal, engine

from clubhouse import models

TIERS = [
    # daily_sim_minutes >= 999 means unlimited; 0 means every minute is overage.
    {"name": "social", "daily_sim_minutes": 0, "daily_conf_room_minutes": 0, "booking_window_days": 7, "guest_passes_per_month": 0, "can_book_simulators": True, "can_book_conference": False},
    {"name": "core", "daily_sim_minutes": 60, "daily_conf_room_minutes": 60, "booking_window_days": 7, "guest_passes_per_month": 4, "can_book_simulators": True, "can_book_conference": True},
    {"name": "premium", "daily_sim_minutes": 90, "daily_conf_room_minutes": 90, "booking_window_days": 10, "guest_passes_per_month": 8, "can_book_simulators": True, "can_book_conference": True, "can_book_wellness": True},
    {"name": "corporate", "daily_sim_minutes": 90, "daily_conf_room_minutes": 120, "booking_window_days": 10, "guest_passes_per_month": 8, "can_book_simulators": True, "can_book_conference": True},
    {"name": "vip", "daily_sim_minutes": 999, "daily_conf_room_minutes": 999, "booking_window_days": 14, "guest_passes_per_month": 999, "can_book_simulators": True, "can_book_conference": True, "can_book_wellness": True, "unlimited_access": True},
    {"name": "staff", "daily_sim_minutes": 999, "daily_conf_room_minutes": 999, "booking_window_days": 14, "guest_passes_per_month": 0, "can_book_simulators": True, "can_book_conference": True, "unlimited_access": True},
    {"name": "group lessons", "daily_sim_minutes": 0, "daily_conf_room_minutes": 0, "booking_window_days": 7, "guest_passes_per_month": 0, "can_book_simulators": False, "can_book_conference": False},
]

RESOURCES = [
    {"name": "Bay 1", "type": models.ResourceType.simulator},
    {"name": "Bay 2", "type": models.ResourceType.simulator},
    {"name": "Bay 3", "type": models.ResourceType.simulator},
    {"name": "Bay 4", "type": models.ResourceType.simulator},
    {"name": "Conference Room", "type": models.ResourceType.conference_room},
]


def populate_tiers():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()

    print("Populating membership tiers...")
    added = 0
    updated = 0
    for tier_data in TIERS:
        existing = db.query(models.MembershipTier).filter(models.MembershipTier.name == tier_data["name"]).first()
        if existing:
            for key, value in tier_data.items():
                if key == "name":
                    continue
                setattr(existing, key, value)
            updated += 1
            print(f"  Updated: {tier_data['name']} - {tier_data['daily_sim_minutes']} min/day")
        else:
            db.add(models.MembershipTier(**tier_data))
            added += 1
            print(f"  Added: {tier_data['name']} - {tier_data['daily_sim_minutes']} min/day")

    for resource_data in RESOURCES:
        existing = db.query(models.Resource).filter(models.Resource.name == resource_data["name"]).first()
        if not existing:
            db.add(models.Resource(**resource_data))
            added += 1
            print(f"  Added resource: {resource_data['name']}")

    db.commit()
    print(f"\nOK: {added} added, {updated} updated ({len(TIERS)} tiers, {len(RESOURCES)} resources).")
    db.close()

if __name__ == "__main__":
    populate_tiers()
