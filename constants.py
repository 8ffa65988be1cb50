import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

# Tokens
TOKEN_SECRET = os.getenv("TOKEN_SECRET", "change-me")
TOKEN_ALGORITHM = "HS256"
REALTIME_TOKEN_TTL_SECONDS = int(os.getenv("REALTIME_TOKEN_TTL_SECONDS", 2 * 60 * 60))
SESSION_TOKEN_TTL_SECONDS = int(os.getenv("SESSION_TOKEN_TTL_SECONDS", 24 * 60 * 60))
REALTIME_CAPABILITY = {"room:*": ["subscribe", "publish", "presence", "history"]}

# Rooms
ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", 2 * 60 * 60))
PRESENCE_TTL_SECONDS = int(os.getenv("PRESENCE_TTL_SECONDS", 2 * 60 * 60))
PRESENCE_MEMBER_TTL_SECONDS = float(os.getenv("PRESENCE_MEMBER_TTL_SECONDS", 30))
ROOM_CODE_LENGTH = int(os.getenv("ROOM_CODE_LENGTH", 6))
ROOM_CODE_MAX_ATTEMPTS = int(os.getenv("ROOM_CODE_MAX_ATTEMPTS", 10))
TOTAL_ROUNDS = int(os.getenv("TOTAL_ROUNDS", 5))
MIN_PLAYERS_TO_START = int(os.getenv("MIN_PLAYERS_TO_START", 1))
MAX_CAPTION_LENGTH = 200

# Phase timings (seconds)
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", 2.0))
START_COUNTDOWN_SECONDS = float(os.getenv("START_COUNTDOWN_SECONDS", 3))
MEME_SELECTION_DURATION = float(os.getenv("MEME_SELECTION_DURATION", 30))
MEME_VOTING_DURATION = float(os.getenv("MEME_VOTING_DURATION", 30))
CAPTION_ENTRY_DURATION = float(os.getenv("CAPTION_ENTRY_DURATION", 60))
CAPTION_VOTING_DURATION = float(os.getenv("CAPTION_VOTING_DURATION", 45))
ROUND_RESULTS_DURATION = float(os.getenv("ROUND_RESULTS_DURATION", 12))

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]
