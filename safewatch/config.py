import os

BOT_TOKEN = os.getenv("BOT_TOKEN", "")
USER_ID = os.getenv("SAFEWATCH_USER_ID", "local")
USER_NAME = os.getenv("SAFEWATCH_USER_NAME", "SafeWatch user")

STORE_API_BASE = os.getenv("STORE_API_BASE", "")
STORE_API_KEY = os.getenv("STORE_API_KEY", "")

SMS_API_URL = os.getenv("SMS_API_URL", "")
SMS_API_KEY = os.getenv("SMS_API_KEY", "")
SMS_SENDER_ID = os.getenv("SMS_SENDER_ID", "SAFEWATCH")

GEOCODER_URL = os.getenv("GEOCODER_URL", "https://nominatim.openstreetmap.org/reverse")
GEOCODER_ENABLED = os.getenv("GEOCODER_ENABLED", "1") not in {"0", "false", "False"}
GEOCODER_TIMEOUT_SEC = float(os.getenv("GEOCODER_TIMEOUT_SEC", "3"))
GEOCODE_PRECISION = int(os.getenv("GEOCODE_PRECISION", "4"))

CONNECTIVITY_PROBE_URL = os.getenv("CONNECTIVITY_PROBE_URL", "https://clients3.google.com/generate_204")
CONNECTIVITY_PROBE_EVERY_SEC = int(os.getenv("CONNECTIVITY_PROBE_EVERY_SEC", "15"))

SHARE_BASE_URL = os.getenv("SHARE_BASE_URL", "https://safewatch.app")
MAP_LINK_BASE = "https://maps.google.com/?q="

# Каденс трекинга: передний план точнее, фон экономит батарею
FG_MIN_INTERVAL_SEC = float(os.getenv("FG_MIN_INTERVAL_SEC", "5"))
FG_MIN_DISPLACEMENT_M = float(os.getenv("FG_MIN_DISPLACEMENT_M", "10"))
BG_MIN_INTERVAL_SEC = float(os.getenv("BG_MIN_INTERVAL_SEC", "15"))
BG_MIN_DISPLACEMENT_M = float(os.getenv("BG_MIN_DISPLACEMENT_M", "50"))
ACCURACY_MAX_M = float(os.getenv("ACCURACY_MAX_M", "100"))
SAMPLE_MAX_AGE_SEC = float(os.getenv("SAMPLE_MAX_AGE_SEC", "60"))
LOCATION_HISTORY_MAX = int(os.getenv("LOCATION_HISTORY_MAX", "1000"))
CURRENT_POSITION_TIMEOUT_SEC = float(os.getenv("CURRENT_POSITION_TIMEOUT_SEC", "10"))

ZONE_RADIUS_MIN_M = 10
ZONE_RADIUS_MAX_M = 10000
GEOFENCE_HYSTERESIS_RATIO = float(os.getenv("GEOFENCE_HYSTERESIS_RATIO", "0"))
ZONE_CACHE_TTL_SEC = int(os.getenv("ZONE_CACHE_TTL_SEC", "300"))
ZONE_CACHE_MAX = int(os.getenv("ZONE_CACHE_MAX", "200"))
ZONE_RELOAD_EVERY_SEC = int(os.getenv("ZONE_RELOAD_EVERY_SEC", "300"))

DELIVERY_TIMEOUT_SEC = float(os.getenv("DELIVERY_TIMEOUT_SEC", "10"))
DELIVERY_MAX_ATTEMPTS = int(os.getenv("DELIVERY_MAX_ATTEMPTS", "3"))
DELIVERY_BACKOFF_BASE_SEC = float(os.getenv("DELIVERY_BACKOFF_BASE_SEC", "0.5"))
ZONE_ALERT_COOLDOWN_SEC = int(os.getenv("ZONE_ALERT_COOLDOWN_SEC", "60"))
OFFLINE_MAX_QUEUE_ATTEMPTS = int(os.getenv("OFFLINE_MAX_QUEUE_ATTEMPTS", "3"))
OFFLINE_QUEUE_PATH = os.getenv("OFFLINE_QUEUE_PATH", "safewatch_queue.json")
# завершённые джобы держим в памяти час, дальше только в сторе
JOB_RETENTION_SEC = int(os.getenv("JOB_RETENTION_SEC", "3600"))

SHARE_REFRESH_EVERY_SEC = int(os.getenv("SHARE_REFRESH_EVERY_SEC", "10"))
SHARE_DEFAULT_MINUTES = int(os.getenv("SHARE_DEFAULT_MINUTES", "60"))

HTTP_TIMEOUT_SEC = int(os.getenv("HTTP_TIMEOUT_SEC", "10"))


def _parse_recipients(raw: str) -> list[str]:
    recipients: list[str] = []
    for item in raw.split(","):
        value = item.strip()
        if value and value not in recipients:
            recipients.append(value)
    return recipients


def _parse_chat_ids(raw: str) -> list[int]:
    chat_ids: list[int] = []
    for item in raw.split(","):
        value = item.strip()
        if not value:
            continue
        try:
            chat_id = int(value)
        except ValueError:
            continue
        if chat_id != 0:
            chat_ids.append(chat_id)
    return sorted(set(chat_ids))


# Доверенные контакты: +79990000000 (SMS) или tg:<chat_id> (push)
TRUSTED_CONTACTS = _parse_recipients(os.getenv("TRUSTED_CONTACTS", ""))
OWNER_CHAT_IDS = _parse_chat_ids(os.getenv("OWNER_CHAT_IDS", ""))
