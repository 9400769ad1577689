"""Runtime configuration routes."""
from fastapi import APIRouter, Depends

from grantscan.config import SettingsProvider, get_settings_provider

router = APIRouter()

CREDENTIAL_FIELDS = ("gemini_api_key", "odcloud_api_key", "data_go_kr_api_key", "dart_api_key")


@router.post("/reload")
async def reload_config(settings: SettingsProvider = Depends(get_settings_provider)):
    """Re-read the environment; calls already in flight keep their snapshot."""
    current = settings.reload()
    return {
        "reloaded": True,
        "model": current.gemini_model,
        "configured": {name: bool(getattr(current, name)) for name in CREDENTIAL_FIELDS},
    }
