import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(override=True)

DATABASE_PATH = Path(os.getenv("DATABASE_PATH", "./db.json"))

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8080"))
BASE_URL = os.getenv("BASE_URL", "https://www.hytaletop.fun").rstrip("/")

# admin jobs are open when this is unset
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")

GEOIP_KEY = os.getenv("GEOIP_KEY")
GEOIP_DB = Path(os.getenv("GEOIP_DB", "./GeoIP2-City.mmdb"))

QUERY_TIMEOUT = float(os.getenv("QUERY_TIMEOUT", "3"))
PING_BATCH_SIZE = 8

DEBUG = os.getenv("HYTALE_DEBUG") is not None
