# settings.py
import os

from dotenv import load_dotenv

load_dotenv()

# "reject" aborts the whole computation on start >= end, "drop" skips that interval only
INVALID_INTERVAL_POLICY = os.getenv("INVALID_INTERVAL_POLICY", "reject").strip().lower()

# roster members with no submitted availability: "exclude" or "unavailable"
ABSENT_PARTICIPANT_POLICY = os.getenv("ABSENT_PARTICIPANT_POLICY", "exclude").strip().lower()

EVENT_STORE = os.getenv("EVENT_STORE", "event_store.json")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
