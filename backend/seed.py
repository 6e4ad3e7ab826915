"""
Idempotent seed: a sample notification template and, optionally, preferences for a test user.
Test user is for local/testing only; set SEED_UID (and SEED_EMAIL / SEED_PHONE) to create it.
"""
import asyncio
from datetime import datetime, timezone
import os
from pathlib import Path
from dotenv import load_dotenv
from database import get_db_context

load_dotenv(Path(__file__).resolve().parent / ".env")

SEED_TEMPLATE_ID = os.environ.get("SEED_TEMPLATE_ID", "booking_confirmed")

SAMPLE_TEMPLATE = {
    "id": SEED_TEMPLATE_ID,
    "title": {
        "vi": "Đặt lịch thành công",
        "en": "Booking confirmed",
    },
    "body": {
        "vi": "Xin chào {{user.name}}, lịch hẹn {{booking.code}} của bạn đã được xác nhận.",
        "en": "Hi {{user.name}}, your booking {{booking.code}} is confirmed.",
    },
    "channels": ["inapp", "push", "email"],
}


async def seed_database():
    async with get_db_context() as db:
        print("Seeding database (idempotent)...")

        # 1) Sample template
        result = await db.notificationTemplates.update_one(
            {"id": SAMPLE_TEMPLATE["id"]},
            {"$setOnInsert": {**SAMPLE_TEMPLATE, "created_at": datetime.now(timezone.utc)}},
            upsert=True,
        )
        if result.upserted_id:
            print(f"  Template created: {SAMPLE_TEMPLATE['id']}")
        else:
            print(f"  Template already exists: {SAMPLE_TEMPLATE['id']}")

        # 2) Test user preferences
        seed_uid = os.environ.get("SEED_UID", "").strip()
        if seed_uid:
            await db.userNotificationPreferences.update_one(
                {"uid": seed_uid},
                {"$setOnInsert": {
                    "uid": seed_uid,
                    "language": "vi",
                    "timezone": "Asia/Ho_Chi_Minh",
                    "quietHours": {"start": "22:00", "end": "07:00"},
                    "contact": {
                        "email": os.environ.get("SEED_EMAIL") or None,
                        "phone": os.environ.get("SEED_PHONE") or None,
                        "fcmTokens": [],
                    },
                }},
                upsert=True,
            )
            print(f"  Preferences ensured for uid={seed_uid}")
        else:
            print("  Preferences: skipped (set SEED_UID to create)")

        print("Seed complete.")


if __name__ == "__main__":
    asyncio.run(seed_database())
