"""
Push payload construction.

Builds the Expo message body: ``{to, sound, title, body, data}`` plus the
platform-conditional fields. iOS always plays the dedicated app sound.
"""

from typing import Any, Optional, Union

from courier_dispatch.core.config import Settings, get_settings
from courier_dispatch.core.timeutils import utcnow
from courier_dispatch.services.notifications.base import PushMessage


def resolve_sound(
    sound_type: Optional[str],
    platform: Optional[str],
    settings: Optional[Settings] = None,
) -> Union[str, bool]:
    """Map a logical sound name to what the device platform expects."""
    settings = settings or get_settings()
    sound = sound_type or settings.push_default_sound

    if platform == "ios":
        return settings.push_ios_sound

    if platform == "android":
        if sound == "system":
            return True
        if sound == "default":
            return "default"
        return f"{sound}.wav"

    return sound


def build_push_payload(message: PushMessage, settings: Optional[Settings] = None) -> dict[str, Any]:
    settings = settings or get_settings()
    sound_type = message.sound_type or settings.push_default_sound

    payload: dict[str, Any] = {
        "to": message.to,
        "sound": resolve_sound(sound_type, message.platform, settings),
        "title": message.title,
        "body": message.body,
        "data": {
            **message.data,
            "soundType": sound_type,
            "timestamp": utcnow().isoformat(),
            "platform": message.platform or "unknown",
        },
    }

    if message.platform == "ios":
        payload.update({
            "priority": "high",
            "badge": 1,
            "subtitle": settings.push_app_subtitle,
            "_contentAvailable": True,
        })
    elif message.platform == "android":
        payload.update({
            "priority": "high",
            "channelId": "default",
        })

    return payload
