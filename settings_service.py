# settings_service.py
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from models import Settings


async def get_settings(session: AsyncSession) -> Settings:
    """Settings row #1, or an unsaved instance with defaults filled in."""
    settings = await session.get(Settings, 1)
    if settings:
        return settings
    return Settings(
        id=1,
        dine_in_service_charge=Decimal('0.12'),
        tax_rate=Decimal('0'),
        transfer_web_orders_on_shift_start=False,
        allow_negative_stock=True,
        status_webhook_retries=3,
    )
