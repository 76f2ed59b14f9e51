from __future__ import annotations

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000

DEFAULT_SESSIONS_DIR = "./sessions"
DEFAULT_MEDIA_DIR = "./media"
DEFAULT_SESSION_ID = "default"

# Per-session message log bound (oldest evicted first).
DEFAULT_RETENTION = 5000

DEFAULT_RECONNECT_DELAY_S = 3.0
DEFAULT_PROBE_INTERVAL_S = 30.0
# Events queued per observer before newer ones are dropped.
DEFAULT_OBSERVER_QUEUE_SIZE = 256
DEFAULT_CONNECT_TIMEOUT_S = 60.0

DEFAULT_WEBHOOK_TIMEOUT_S = 10.0
DEFAULT_WEBHOOK_QUEUE_SIZE = 1000

DEFAULT_BOT_REPLY = "Olá! Recebemos sua mensagem e responderemos em breve."

# Brazilian numbering: 55 + DDD (2) + 9 + subscriber (8).
DEFAULT_COUNTRY_CODE = "55"
LOCAL_MAX_DIGITS = 11
MOBILE_COLLAPSE_LENGTH = 13
MOBILE_COLLAPSE_INDEX = 4

S_WHATSAPP_NET = "@s.whatsapp.net"
G_US = "@g.us"
STATUS_BROADCAST_JID = "status@broadcast"

# Extensions used when persisting downloaded media, keyed by event kind.
MEDIA_EXTENSIONS = {
    "image": "jpg",
    "video": "mp4",
    "audio": "ogg",
}
