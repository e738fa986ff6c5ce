# app/models/__init__.py

from app.models.icm_snapshot import IcmSnapshot
from app.models.icm_update_state import IcmUpdateState, UpdateProgress
from app.models.system_setting import SystemSetting


__all__ = [
    "IcmSnapshot",
    "IcmUpdateState",
    "UpdateProgress",
    "SystemSetting",
]
