import logging
from datetime import date, time, timedelta

from app.core.persistence import PersistenceProvider
from app.models.user import Gender, PatientProfile, ProviderProfile, Role
from app.services import auth_service, slot_service

logger = logging.getLogger(__name__)

SAMPLE_PASSWORD = "password123"

SAMPLE_PROVIDERS = [
    ("sarah.johnson@doccare.com", "Dr. Sarah Johnson", "cardiology"),
    ("michael.chen@doccare.com", "Dr. Michael Chen", "dermatology"),
    ("emily.davis@doccare.com", "Dr. Emily Davis", "pediatrics"),
]

SAMPLE_PATIENTS = [
    ("john.smith@example.com", "John Smith", 35, Gender.MALE),
    ("maria.garcia@example.com", "Maria Garcia", 28, Gender.FEMALE),
]

SAMPLE_TIMES = [time(9, 0), time(9, 30), time(10, 0), time(10, 30), time(14, 0), time(14, 30)]


async def seed_sample_data(store: PersistenceProvider, today: date, days: int = 7) -> dict[str, int]:
    """Create sample providers, patients and a week of open slots. Safe to run twice."""
    if await store.list_users(Role.PROVIDER.value):
        logger.info("Sample data skipped: providers already exist")
        return {"providers": 0, "patients": 0, "slots": 0}

    provider_ids: list[str] = []
    for email, name, specialty in SAMPLE_PROVIDERS:
        user, _ = await auth_service.register(
            store, email, SAMPLE_PASSWORD, ProviderProfile(display_name=name, specialty=specialty)
        )
        provider_ids.append(user.id)
    for email, name, age, gender in SAMPLE_PATIENTS:
        await auth_service.register(
            store, email, SAMPLE_PASSWORD, PatientProfile(display_name=name, age=age, gender=gender)
        )

    slots = 0
    for provider_id in provider_ids:
        for offset in range(1, days + 1):
            day = today + timedelta(days=offset)
            for slot_time in SAMPLE_TIMES:
                await slot_service.publish_slot(store, provider_id, day, slot_time)
                slots += 1
    logger.info("Seeded %d providers, %d patients, %d slots", len(provider_ids), len(SAMPLE_PATIENTS), slots)
    return {"providers": len(provider_ids), "patients": len(SAMPLE_PATIENTS), "slots": slots}
