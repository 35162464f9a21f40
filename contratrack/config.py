"""Runtime configuration for ContraTrack.

Everything is read from the environment once at import time. Services never
import this module directly: the values are passed into their constructors
by ``bot.py`` (or by tests), which keeps them swappable.

Env:
  DATABASE_URL, TELEGRAM_TOKEN (optional), TZ (default Asia/Singapore),
  ADMIN_IDS, CALLBACK_SECRET, TRAINING_CREDIT, TRAINING_TRIGGER_THRESHOLD,
  TRAINING_DUE_DAYS, PERFORMANCE_IMPACT_SINGLE_OFFENSE,
  FISCAL_YEAR_START_MONTH, POINTS_DECAY_ENABLED, DECAY_DORMANT_DAYS,
  DECAY_POINTS
"""

import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///contratrack.db")
TELEGRAM_TOKEN = os.getenv("TELEGRAM_TOKEN")
TZ_NAME = os.getenv("TZ", "Asia/Singapore")
ADMIN_IDS = {int(x) for x in os.getenv("ADMIN_IDS", "").split(",") if x.strip().isdigit()}

# points
TRAINING_CREDIT = int(os.getenv("TRAINING_CREDIT", "1"))
TRAINING_TRIGGER_THRESHOLD = int(os.getenv("TRAINING_TRIGGER_THRESHOLD", "3"))
TRAINING_DUE_DAYS = int(os.getenv("TRAINING_DUE_DAYS", "30"))
PERFORMANCE_IMPACT_SINGLE_OFFENSE = int(os.getenv("PERFORMANCE_IMPACT_SINGLE_OFFENSE", "3"))

# fiscal year: April 1 - March 31
FISCAL_YEAR_START_MONTH = int(os.getenv("FISCAL_YEAR_START_MONTH", "4"))

# legacy decay, off unless explicitly enabled
POINTS_DECAY_ENABLED = os.getenv("POINTS_DECAY_ENABLED", "false").lower() in ("1", "true", "yes")
DECAY_DORMANT_DAYS = int(os.getenv("DECAY_DORMANT_DAYS", "90"))
DECAY_POINTS = int(os.getenv("DECAY_POINTS", "1"))

# LEVEL_3 has no point range: it is reached through the performance-impact
# override only.
ESCALATION_MATRIX = {
    "LEVEL_1": {
        "name": "Verbal Advisory",
        "min": 1,
        "max": 2,
        "due_days": 7,
        "actions": ["Finance verbal advisory on contravention and prevention"],
    },
    "LEVEL_2": {
        "name": "Mandatory Training",
        "min": 3,
        "max": None,
        "due_days": 30,
        "actions": ["Complete Procurement Compliance Training within 30 days"],
    },
    "LEVEL_3": {
        "name": "Performance Impact",
        "min": None,
        "max": None,
        "due_days": 1,
        "actions": [
            "Affects performance review",
            "Manager to review employee contravention record at end of performance cycle",
        ],
    },
}
