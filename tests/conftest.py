"""Point the app at an in-memory database before anything imports rainbowcast.db."""

import os

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["CACHE_BACKEND"] = "memory"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["OPENWEATHERMAP_API_KEY"] = ""
os.environ["MONITOR_SELF_SCHEDULE"] = "0"
for name in ("FCM_PROJECT_ID", "FCM_CREDENTIALS_PATH", "APNS_KEY_PATH", "APNS_KEY_ID", "APNS_TEAM_ID", "APNS_TOPIC"):
    os.environ[name] = ""
