import os
import shlex

# -------------------------
# Server
# -------------------------

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3001"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "ALLOWED_ORIGINS",
        "http://localhost:3000,https://twittervideodownloader-gilt.vercel.app",
    ).split(",")
    if origin.strip()
]

# -------------------------
# Rate limiting
# -------------------------

RATE_LIMIT = os.getenv("RATE_LIMIT", "40/15minutes")
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() not in ("0", "false", "no")

# -------------------------
# Extraction (yt-dlp)
# -------------------------

# Split like a shell would so "python -m yt_dlp" works too
YTDLP_COMMAND = shlex.split(os.getenv("YTDLP_COMMAND", "yt-dlp"))
EXTRACT_TIMEOUT = float(os.getenv("EXTRACT_TIMEOUT", "120"))
EXTRACT_MAX_OUTPUT = int(os.getenv("EXTRACT_MAX_OUTPUT", str(30 * 1024 * 1024)))

# -------------------------
# Stream relay
# -------------------------

RELAY_CONNECT_TIMEOUT = float(os.getenv("RELAY_CONNECT_TIMEOUT", "10"))
RELAY_READ_TIMEOUT = float(os.getenv("RELAY_READ_TIMEOUT", "60"))
RELAY_MAX_REDIRECTS = int(os.getenv("RELAY_MAX_REDIRECTS", "10"))
