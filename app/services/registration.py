"""
Registration toggle store.

The flag lives in the ``system_settings`` table so every API instance sees
the same value and it survives restarts. Until an admin sets it, the
``REGISTRATION_ENABLED`` setting is the default.
"""
import logging
from sqlalchemy.orm import Session
from core.config import settings
from db.repository import Repository

logger = logging.getLogger(__name__)

REGISTRATION_KEY = "registration_enabled"


def is_registration_enabled(db: Session) -> bool:
    value = Repository(db).get_setting(REGISTRATION_KEY, default=settings.registration_enabled)
    return bool(value)


def set_registration_enabled(db: Session, enabled: bool) -> bool:
    Repository(db).set_setting(REGISTRATION_KEY, bool(enabled))
    logger.info(f"Registration {'enabled' if enabled else 'disabled'}")
    return bool(enabled)
